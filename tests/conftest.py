import pytest
from fastapi.testclient import TestClient

from blend_store import BlendStore
from coal_properties import Coal
from server import create_app

from samples import DOMESTIC, INDO


@pytest.fixture
def coals():
    return [Coal.from_dict({**INDO, "id": 1}), Coal.from_dict({**DOMESTIC, "id": 2})]


@pytest.fixture
def store(tmp_path):
    s = BlendStore(str(tmp_path / "blend.db"))
    s.init_db()
    return s


@pytest.fixture
def client(tmp_path):
    app = create_app(db_path=str(tmp_path / "api.db"), tick_seconds=3600)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def blend_payload():
    return {
        "rows": [
            {"coal": "Indo", "percentages": [100, 50, 0, 0, 0, 0]},
            {"coal": "domestic", "percentages": [0, 50, 100, 0, 0, 0]},
        ],
        "flows": [10, 20, 30, 0, 0, 0],
        "generation": 100,
    }

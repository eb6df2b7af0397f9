import sqlite3

import pytest
from fastapi.testclient import TestClient

from samples import DOMESTIC, INDO
from server import create_app


@pytest.fixture
def catalog(client):
    uploaded = [
        {"Coal": "Indo", **{k: v for k, v in INDO.items() if k != "coal"}},
        {"Name": "Domestic", "SiO₂": 60, "Al₂O₃": 25, "Fe2O3": 5, "CaO": 2, "MgO": 1, "Na2O": 0.5,
         "K2O": 0.5, "SO3": 1, "TiO2": 1, "GCV": 3400, "Cost": 2500},
    ]
    res = client.post("/api/coal", json=uploaded)
    assert res.status_code == 200
    return client.get("/api/coalnames").json()


def test_root(client):
    assert client.get("/").json()["status"] == "online"


def test_catalog_upload_and_listing(client, catalog):
    assert client.get("/api/coal/count").json() == {"count": 2}
    for path in ("/api/coal", "/api/coals", "/api/coal/list"):
        coals = client.get(path).json()
        assert [c["coal"] for c in coals] == ["Indo", "Domestic"]
    domestic = client.get("/api/coal").json()[1]
    assert domestic["SiO2"] == DOMESTIC["SiO2"]
    assert domestic["gcv"] == 3400
    assert [set(c) for c in catalog] == [{"_id", "coal"}, {"_id", "coal"}]


def test_catalog_upload_stores_odd_values(client):
    res = client.post("/api/coal", json=[{"Coal": "Odd", "GCV": -5}, {"Coal": "Indo", "GCV": "Infinity"}])
    assert res.status_code == 200
    assert res.json()["count"] == 2
    assert [c["gcv"] for c in client.get("/api/coal").json()] == [-5, 0]


def test_storage_errors_map_to_500(client, monkeypatch):
    def broken():
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(client.app.state.store, "list_coals", broken)
    res = client.get("/api/coal")
    assert res.status_code == 500
    assert res.json()["detail"] == "disk I/O error"


def test_latest_blend_missing(client):
    res = client.get("/api/blend/latest")
    assert res.status_code == 404
    assert res.json()["detail"] == "No blends found"


def test_create_blend_computes_metrics(client, catalog, blend_payload):
    res = client.post("/api/blend", json=blend_payload)
    assert res.status_code == 201
    body = res.json()
    assert body["message"] == "Saved"

    latest = client.get("/api/blend/latest").json()
    assert latest["_id"] == body["id"]
    assert latest["totalFlow"] == 60
    assert latest["avgGCV"] == pytest.approx(220000 / 60)
    assert latest["heatRate"] == pytest.approx(2200)
    assert latest["costRate"] == pytest.approx(3750)
    assert latest["rows"][1]["coal"] == "Domestic"
    assert len(latest["bunkers"]) == 6
    assert len(latest["aftPerMill"]) == 6
    assert latest["aftPerMill"][5] is None


def test_blend_rows_may_reference_catalog_ids(client, catalog):
    ids = {c["coal"]: c["_id"] for c in catalog}
    payload = {
        "rows": [{"coal": {"0": ids["Indo"], "1": str(ids["Domestic"])}, "percentages": [100, 100, 0, 0, 0, 0]}],
        "flows": [1, 1, 0, 0, 0, 0],
        "generation": 10,
    }
    assert client.post("/api/blend", json=payload).status_code == 201
    latest = client.get("/api/blend/latest").json()
    assert latest["rows"][0]["coal"] == {"0": "Indo", "1": "Domestic"}
    assert latest["blendedGCVPerMill"][:2] == pytest.approx([4200, 3400])


def test_blend_payload_values_are_coerced(client, catalog):
    payload = {
        "rows": [{"coal": "Indo", "percentages": ["50", "", "abc"], "gcv": "", "cost": None}],
        "flows": ["10", None],
        "generation": "",
    }
    assert client.post("/api/blend", json=payload).status_code == 201
    latest = client.get("/api/blend/latest").json()
    assert latest["rows"][0]["percentages"] == [50, 0, 0]
    assert latest["flows"] == [10, 0]
    assert latest["generation"] is None
    assert latest["heatRate"] is None
    assert latest["blendedGCVPerMill"][0] == pytest.approx(2100)


def test_blend_payload_requires_rows_and_flows(client):
    assert client.post("/api/blend", json={"rows": []}).status_code == 422
    assert client.post("/api/blend", json={"flows": [], "rows": "nope"}).status_code == 422


def test_update_blend(client, catalog, blend_payload):
    blend_id = client.post("/api/blend", json=blend_payload).json()["id"]
    blend_payload["flows"] = [0, 0, 30, 0, 0, 0]

    res = client.put(f"/api/blend/{blend_id}", json=blend_payload)
    assert res.json() == {"message": "Updated", "id": blend_id}

    latest = client.get("/api/blend/latest").json()
    assert latest["_id"] == blend_id
    assert latest["totalFlow"] == 30
    assert latest["avgGCV"] == pytest.approx(3400)


def test_update_missing_blend(client, blend_payload):
    res = client.put("/api/blend/999", json=blend_payload)
    assert res.status_code == 404
    assert res.json()["detail"] == "Blend not found"


def test_bunker_state_tracks_latest_blend(client, catalog, blend_payload):
    assert client.get("/api/bunkers/state").json()["bunkers"] == []

    blend_id = client.post("/api/blend", json=blend_payload).json()["id"]
    state = client.get("/api/bunkers/state").json()
    assert state["blendId"] == blend_id
    assert len(state["bunkers"]) == 6
    # Bunker 2 holds Indo over Domestic; Domestic is at the bottom
    assert state["bunkers"][1]["activeLayer"]["coal"] == "Domestic"
    assert state["metrics"]["totalFlow"] == 60
    assert state["metrics"]["avgGCV"] == pytest.approx((10 * 4200 + 20 * 3400 + 30 * 3400) / 60)


def test_websocket_receives_blend_update(client, catalog, blend_payload):
    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json()["type"] == "tick"
        blend_id = client.post("/api/blend", json=blend_payload).json()["id"]
        message = ws.receive_json()
    assert message["type"] == "blend_update"
    assert message["blendId"] == blend_id
    assert len(message["bunkers"]) == 6


def test_non_finite_values_are_stored_as_zero(client, catalog):
    payload = {
        "rows": [{"coal": "Indo", "percentages": ["Infinity", 50, "1e999"], "gcv": "inf"}],
        "flows": ["Infinity", 10],
        "generation": "NaN",
    }
    assert client.post("/api/blend", json=payload).status_code == 201

    res = client.get("/api/blend/latest")
    assert res.status_code == 200
    latest = res.json()
    assert latest["rows"][0]["percentages"] == [0, 50, 0]
    assert latest["flows"] == [0, 10]
    assert latest["totalFlow"] == 10
    assert latest["blendedGCVPerMill"][1] == pytest.approx(2100)


def test_editing_an_older_blend_keeps_the_simulation(client, catalog, blend_payload):
    older = client.post("/api/blend", json=blend_payload).json()["id"]
    newer = client.post("/api/blend", json=blend_payload).json()["id"]
    binder = client.app.state.binder
    binder.tick(5)

    assert client.put(f"/api/blend/{older}", json=blend_payload).status_code == 200
    assert binder.blend_id == newer
    assert binder.elapsed == 5

    assert client.put(f"/api/blend/{newer}", json=blend_payload).status_code == 200
    assert binder.blend_id == newer
    assert binder.elapsed == 0


def test_websocket_receives_ticker_events(tmp_path):
    payload = {
        "rows": [
            {"coal": "Indo", "percentages": [100, 0, 0, 0, 0, 0], "timers": [0.2]},
            {"coal": "Domestic", "percentages": [100, 0, 0, 0, 0, 0], "timers": [0.2]},
        ],
        "flows": [10, 0, 0, 0, 0, 0],
        "generation": 100,
    }
    app = create_app(db_path=str(tmp_path / "ticker.db"), tick_seconds=0.05)
    with TestClient(app) as c:
        with c.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "tick"
            assert c.post("/api/blend", json=payload).status_code == 201

            seen = []
            while len(seen) < 200:
                message = ws.receive_json()
                seen.append(message["type"])
                if message["type"] == "layer_advanced":
                    break

    assert "blend_update" in seen
    assert "tick" in seen
    assert message["type"] == "layer_advanced"
    # Domestic is the bottom layer, so Indo is fired next
    assert message["bunker"] == 0
    assert message["activeLayer"]["coal"] == "Indo"

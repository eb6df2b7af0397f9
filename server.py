import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, List, Optional, Union

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

import config
from blend_engine import CoalLookup, compute_blend_metrics, resolve_row
from blend_store import BlendStore
from bunker_timer import NextBlendBinder
from coal_properties import NUM_MILLS, normalise_coal_record, to_number

logger = logging.getLogger(__name__)


# --- Data Models ---
class RowInput(BaseModel):
    # Rows may also carry their own oxide values (SiO2, Al2O3, ...)
    model_config = ConfigDict(extra="allow")

    coal: Union[str, Dict[str, str], None] = None
    percentages: List[float] = Field(default_factory=lambda: [0.0] * NUM_MILLS)
    gcv: Optional[float] = None
    cost: Optional[float] = None
    timers: Optional[List[Optional[float]]] = None  # Per-mill drain seconds

    @field_validator("coal", mode="before")
    @classmethod
    def _coal_ref(cls, v):
        if isinstance(v, dict):
            return {str(k): "" if ref is None else str(ref) for k, ref in v.items()}
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("percentages", mode="before")
    @classmethod
    def _percentages(cls, v):
        if not isinstance(v, list):
            return [0.0] * NUM_MILLS
        return [to_number(p) for p in v]

    @field_validator("gcv", "cost", mode="before")
    @classmethod
    def _number(cls, v):
        return None if v is None else to_number(v)

    @field_validator("timers", mode="before")
    @classmethod
    def _timers(cls, v):
        if not isinstance(v, list):
            return None
        return [to_number(t) or None for t in v]


class BlendPayload(BaseModel):
    rows: List[RowInput]
    flows: List[float]
    generation: Optional[float] = None

    @field_validator("flows", mode="before")
    @classmethod
    def _flows(cls, v):
        if not isinstance(v, list):
            return v  # let pydantic reject it
        return [to_number(f) for f in v]

    @field_validator("generation", mode="before")
    @classmethod
    def _generation(cls, v):
        return None if v is None or v == "" else to_number(v)


# --- WebSocket Manager ---
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.info("Dropping websocket client: %s", e)
                self.disconnect(connection)

    async def broadcast_all(self, messages: List[dict]):
        for message in messages:
            await self.broadcast(message)


router = APIRouter()


def _store(request: Request) -> BlendStore:
    return request.app.state.store


def _build_blend_document(store: BlendStore, payload: BlendPayload) -> Dict[str, Any]:
    lookup = CoalLookup(store.list_coals())
    rows = [resolve_row(r.model_dump(exclude_none=True), lookup) for r in payload.rows]
    metrics = compute_blend_metrics(rows, payload.flows, payload.generation, lookup)
    return {
        "rows": rows,
        "flows": payload.flows,
        "generation": payload.generation,
        **metrics.to_dict(),
    }


async def _rebind(app: FastAPI, store: BlendStore, changed_id: Optional[int] = None):
    """Rebind the simulator to the latest blend unless an older blend was edited."""
    binder: NextBlendBinder = app.state.binder
    latest = store.latest_blend()
    latest_id = latest["_id"] if latest else None
    if changed_id is not None and changed_id != latest_id and binder.blend_id == latest_id:
        return
    binder.bind(latest, store.list_coals())
    await app.state.manager.broadcast({"type": "blend_update", "blendId": binder.blend_id, **binder.state()})


# --- API Endpoints ---

@router.get("/")
def read_root():
    return {"status": "online", "service": "Coal Blend Monitor"}


# 1. Coal catalog
@router.post("/api/coal")
def upload_coal(records: List[Dict[str, Any]], request: Request):
    """Replaces the coal catalog with the uploaded records."""
    store = _store(request)
    count = store.replace_coals([normalise_coal_record(r) for r in records])
    request.app.state.binder.lookup = CoalLookup(store.list_coals())
    return {"message": "Coal data saved", "count": count}


@router.get("/api/coal")
@router.get("/api/coals")
@router.get("/api/coal/list")
def list_coals(request: Request):
    return [c.to_dict() for c in _store(request).list_coals()]


@router.get("/api/coalnames")
def list_coal_names(request: Request):
    return _store(request).coal_names()


@router.get("/api/coal/count")
def count_coals(request: Request):
    return {"count": _store(request).count_coals()}


# 2. Blends
@router.post("/api/blend", status_code=201)
async def create_blend(payload: BlendPayload, request: Request):
    store = _store(request)
    doc = _build_blend_document(store, payload)
    blend_id = store.create_blend(doc)
    logger.info("Saved blend %s (total flow %.2f t/h)", blend_id, doc["totalFlow"])
    await _rebind(request.app, store)
    return {"message": "Saved", "id": blend_id}


@router.put("/api/blend/{blend_id}")
async def update_blend(blend_id: int, payload: BlendPayload, request: Request):
    store = _store(request)
    doc = _build_blend_document(store, payload)
    if not store.update_blend(blend_id, doc):
        raise HTTPException(status_code=404, detail="Blend not found")
    logger.info("Updated blend %s", blend_id)
    await _rebind(request.app, store, changed_id=blend_id)
    return {"message": "Updated", "id": blend_id}


@router.get("/api/blend/latest")
def get_latest_blend(request: Request):
    latest = _store(request).latest_blend()
    if not latest:
        raise HTTPException(status_code=404, detail="No blends found")
    return latest


# 3. Bunker depletion state
@router.get("/api/bunkers/state")
def get_bunker_state(request: Request):
    return request.app.state.binder.state()


# 4. Real-time Socket
@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    manager: ConnectionManager = websocket.app.state.manager
    await manager.connect(websocket)
    try:
        await websocket.send_json({"type": "tick", **websocket.app.state.binder.state()})
        while True:
            await websocket.receive_text()  # Keep alive check
    except WebSocketDisconnect:
        manager.disconnect(websocket)


def create_app(
    db_path: str = config.DB_PATH,
    tick_seconds: float = config.TICK_SECONDS,
    capacity_t: float = config.BUNKER_CAPACITY_T,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store: BlendStore = app.state.store
        store.init_db()
        app.state.binder.bind(store.latest_blend(), store.list_coals())
        ticker = asyncio.create_task(app.state.binder.run(tick_seconds, app.state.manager.broadcast_all))
        try:
            yield
        finally:
            ticker.cancel()
            with suppress(asyncio.CancelledError):
                await ticker

    app = FastAPI(title="Coal Blend Monitor", version="1.0", lifespan=lifespan)
    app.state.store = BlendStore(db_path)
    app.state.binder = NextBlendBinder(capacity_t=capacity_t)
    app.state.manager = ConnectionManager()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(sqlite3.Error)
    async def storage_error(request: Request, exc: sqlite3.Error):
        logger.exception("%s %s failed", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": str(exc) or "Server error"})

    app.include_router(router)
    return app


app = create_app()


def run():
    config.configure_logging()
    logger.info("Starting Coal Blend Monitor on port %s", config.PORT)
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()

from contextlib import asynccontextmanager
import asyncio
import os

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend import StoreError, store_backend
from bridge import BroadcastBridge
from constants import DEFAULT_ROOM, DEFAULT_USER
from history import HistoryLog
from logging_config import get_logger, is_configured, setup_logging
from registry import room_registry
from routers.rooms import rooms_router
from schemas.rooms import HealthResponse
from session import ConnectionSession

# Setup logging (entrypoint.py may already have done it)
if not is_configured():
    setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE", None))
logger = get_logger(__name__)

history_log = HistoryLog(store_backend)

# One bridge per process: a single subscription to the live channel feeding
# every local session. This instance's own messages come back through it too.
broadcast_bridge = BroadcastBridge(store_backend, room_registry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, store_backend.ping)
        await broadcast_bridge.start()
    except StoreError as e:
        logger.critical(f"Cannot reach the store at startup: {e}")
        raise
    logger.info(f"Store reachable, undo policy {history_log.policy!r}")

    yield

    # Stop accepting new work; open sessions drain on their own
    await broadcast_bridge.stop()
    logger.info("Application shutdown complete")


app = FastAPI(title="Live Rooms", lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.get("/health", response_model=HealthResponse)
def health():
    """Store reachability plus this instance's local membership counts."""
    try:
        store_backend.ping()
        store_status = "ok"
    except StoreError:
        store_status = "unavailable"
    body = HealthResponse(
        status="ok" if store_status == "ok" else "degraded",
        store=store_status,
        local_rooms=len(room_registry.rooms()),
        local_sessions=room_registry.total_sessions(),
    )
    if store_status != "ok":
        return JSONResponse(status_code=503, content=body.model_dump())
    return body


@app.websocket("/connect")
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, room: str = None, user: str = None):
    """Duplex connection for one client in one room.

    Query parameters:
    - room: room to join (default "general")
    - user: display name stamped on every event this client sends (default "Anon")
    """
    room = room.strip() if room and room.strip() else DEFAULT_ROOM
    user = user.strip() if user and user.strip() else DEFAULT_USER
    logger.info(f"WebSocket connection attempt for room: {room}, user: {user}")

    session = ConnectionSession(websocket, room, user, store_backend, room_registry, history_log)
    await session.run()

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from typing import List

from admin import AdminOps
from backend import StoreError, store_backend
from history import HistoryLog
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])

admin_ops = AdminOps(store_backend, HistoryLog(store_backend))


def _client_host(request: Request) -> str:
    return request.client.host if request and request.client else "unknown"


@rooms_router.get("/rooms", response_model=List[str])
@rooms_router.get("/admin/rooms", response_model=List[str], include_in_schema=False)
def list_rooms(request: Request):
    """Names of every active room, whether or not anyone is connected right now."""
    logger.info(f"Room list request from {_client_host(request)}")
    try:
        rooms = admin_ops.list_rooms()
    except StoreError as e:
        logger.error(f"Error listing rooms: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Store unavailable")
    logger.debug(f"Listing {len(rooms)} active rooms")
    return rooms


@rooms_router.get("/destroy", response_class=PlainTextResponse)
@rooms_router.get("/admin/destroy", response_class=PlainTextResponse, include_in_schema=False)
def destroy_room(request: Request, room: str = Query(..., min_length=1, description="Room to clear and evict")):
    # Clears history, drops the room from the active set and broadcasts `clear`
    # so clients on every instance reset. Destroying an unknown room succeeds.
    logger.info(f"Destroy request for room {room} from {_client_host(request)}")
    try:
        admin_ops.destroy_room(room)
    except StoreError as e:
        logger.error(f"Error destroying room {room}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Store unavailable")
    return "Destroyed"

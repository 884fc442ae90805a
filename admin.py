from typing import List

from history import HistoryLog
from logging_config import get_logger
from schemas.events import Event, EventKind
from schemas.rooms import RoomState

logger = get_logger(__name__)


class AdminOps:
    """Room lifecycle operations that act on every instance at once.

    A room goes ABSENT -> ACTIVE on its first join or first stored event and
    ACTIVE -> ABSENT only through `destroy_room`. Both operations are
    idempotent; unknown rooms are not an error.
    """

    def __init__(self, store, history: HistoryLog):
        self.store = store
        self.history = history

    def list_rooms(self) -> List[str]:
        return sorted(self.store.active_rooms())

    def room_state(self, room: str) -> RoomState:
        if room in self.store.active_rooms() or self.history.read_range(room, 0, 0):
            return RoomState.ACTIVE
        return RoomState.ABSENT

    def destroy_room(self, room: str) -> RoomState:
        """Clear a room's history, forget it, and tell every client to reset.

        Connected sessions are not disconnected; the `clear` broadcast makes
        their clients drop local state. Returns the state before the call.
        """
        previous = self.room_state(room)
        self.store.remove_active_room(room)
        self.history.clear(room, Event(type=EventKind.CLEAR.value, room=room, payload=None).model_dump_json())
        logger.info(f"Room {room} destroyed (was {previous.value})")
        return previous

import inspect
import threading
from typing import Any, Callable, Dict, List, Set

from logging_config import get_logger

logger = get_logger(__name__)


class RoomRegistry:
    """In-process map of room name -> locally connected sessions.

    Each instance tracks only its own connections. Redis pub/sub distributes
    events across instances and each instance fans out to its local members.

    One lock guards every mutation and snapshot. The lock never covers I/O:
    `for_each` copies the member set under the lock and delivers after
    releasing it, so a session joining mid-delivery misses that one event and
    a session leaving mid-delivery may still receive it.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[Any]] = {}
        self._lock = threading.Lock()

    def join(self, room: str, session) -> None:
        with self._lock:
            members = self._rooms.setdefault(room, set())
            members.add(session)
            count = len(members)
        logger.debug(f"Session joined room {room} (local members: {count})")

    def leave(self, room: str, session) -> bool:
        """Remove a session; unknown rooms or sessions are a no-op."""
        with self._lock:
            members = self._rooms.get(room)
            if not members or session not in members:
                return False
            members.discard(session)
            if not members:
                del self._rooms[room]
            count = len(members)
        logger.debug(f"Session left room {room} (local members: {count})")
        return True

    def members(self, room: str) -> List[Any]:
        with self._lock:
            return list(self._rooms.get(room, ()))

    def count(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def rooms(self) -> List[str]:
        with self._lock:
            return sorted(self._rooms)

    def total_sessions(self) -> int:
        with self._lock:
            return sum(len(members) for members in self._rooms.values())

    async def for_each(self, room: str, fn: Callable[[Any], Any]) -> int:
        """Call `fn(session)` for every member present at snapshot time.

        Awaits `fn` when it returns an awaitable. A member that fails does not
        stop delivery to the rest. Returns the number of successful calls.
        """
        delivered = 0
        for session in self.members(room):
            try:
                result = fn(session)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning(f"Delivery to a member of room {room} failed: {e}")
        return delivered


room_registry = RoomRegistry()

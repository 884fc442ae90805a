from typing import FrozenSet, Iterable, List, Optional

from constants import UNDOABLE_KINDS
from logging_config import get_logger

logger = get_logger(__name__)


class UndoPolicy:
    """Which event kinds an `undo` is allowed to remove.

    Undo removes the newest entry whose kind is in `undoable_kinds`. Newer
    entries of any other kind are left where they are; once no undoable entry
    remains, undo does nothing.
    """

    def __init__(self, undoable_kinds: Iterable[str] = UNDOABLE_KINDS):
        self.undoable_kinds: FrozenSet[str] = frozenset(undoable_kinds)

    def is_undoable(self, kind: Optional[str]) -> bool:
        return kind is not None and kind in self.undoable_kinds

    def __repr__(self):
        return f"UndoPolicy({sorted(self.undoable_kinds)!r})"


class HistoryLog:
    """Ordered per-room event log kept in the shared store.

    Entries are serialized events; their order is the store's append order.
    Only `undo` and `truncate` ever remove entries.
    """

    def __init__(self, store, policy: Optional[UndoPolicy] = None):
        self.store = store
        self.policy = policy or UndoPolicy()

    def append(self, room: str, entry: str) -> int:
        length = self.store.append_history(room, entry)
        logger.debug(f"History for room {room} now has {length} entries")
        return length

    def read_range(self, room: str, start: int = 0, end: int = -1) -> List[str]:
        return self.store.read_history(room, start, end)

    def record(self, room: str, entry: str) -> int:
        """Append an entry and publish it to every instance in one store step."""
        length = self.store.append_and_publish(room, entry)
        logger.debug(f"Recorded entry for room {room}, {length} entries")
        return length

    def clear(self, room: str, message: str) -> bool:
        """Truncate the log and publish `message` in one store step."""
        cleared = self.store.truncate_and_publish(room, message)
        logger.info(f"History for room {room} cleared (had entries: {cleared})")
        return cleared

    def truncate(self, room: str) -> bool:
        cleared = self.store.truncate_history(room)
        logger.info(f"History for room {room} truncated (had entries: {cleared})")
        return cleared

    def undo(self, room: str) -> List[str]:
        """Remove the newest undoable entry and return what remains."""
        removed, remaining = self.store.undo_history(room, self.policy.undoable_kinds)
        if removed is None:
            logger.debug(f"Undo in room {room}: nothing undoable under {self.policy!r}")
        else:
            logger.info(f"Undo in room {room}: removed one entry, {len(remaining)} remain")
        return remaining

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    CHAT = "chat"
    UNDO = "undo"
    CLEAR = "clear"
    HISTORY_LOAD = "history_load"
    REFRESH = "refresh"
    ERROR = "error"


# Kinds the server emits; a client sending one of these is refused
SERVER_ONLY_KINDS = frozenset({EventKind.HISTORY_LOAD.value, EventKind.REFRESH.value, EventKind.ERROR.value})


class Event(BaseModel):
    """Unit of storage and transmission. `payload` is forwarded untouched."""

    type: str = EventKind.CHAT.value
    room: str = Field(min_length=1)
    username: str = ""
    payload: Any = None


class InboundMessage(BaseModel):
    # room/username sent by clients are ignored; the session stamps its own
    type: Optional[str] = None
    payload: Any = None

    @property
    def kind(self) -> str:
        return self.type or EventKind.CHAT.value

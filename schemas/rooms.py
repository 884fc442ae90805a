from enum import Enum
from pydantic import BaseModel


class RoomState(str, Enum):
    ABSENT = "absent"
    ACTIVE = "active"


class HealthResponse(BaseModel):
    status: str
    store: str
    local_rooms: int
    local_sessions: int

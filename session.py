import asyncio
import json
import uuid
from enum import Enum
from typing import Any, Callable, List, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from backend import StoreError
from constants import SESSION_QUEUE_SIZE
from history import HistoryLog
from logging_config import get_logger
from registry import RoomRegistry
from schemas.events import SERVER_ONLY_KINDS, Event, EventKind, InboundMessage

logger = get_logger(__name__)

# WebSocket close codes
CLOSE_INVALID_DATA = 1007
CLOSE_INTERNAL_ERROR = 1011
CLOSE_TRY_AGAIN_LATER = 1013


class SessionState(str, Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    CLOSED = "closed"


def decode_entries(entries: List[str]) -> List[Any]:
    """Turn serialized history entries into JSON values for a list payload.

    Entries that are not JSON are forwarded as their raw string so the payload
    always has one element per stored entry.
    """
    decoded = []
    unreadable = 0
    for entry in entries:
        try:
            decoded.append(json.loads(entry))
        except json.JSONDecodeError:
            unreadable += 1
            decoded.append(entry)
    if unreadable:
        logger.warning(f"Forwarding {unreadable} unreadable history entries as raw strings")
    return decoded


class ConnectionSession:
    """One connected client: joins a single room and runs its read loop.

    The registry only holds a reference for fan-out; the session detects its
    own disconnect and removes itself.
    """

    def __init__(self, websocket: WebSocket, room: str, user: str, store, registry: RoomRegistry, history: HistoryLog, queue_size: int = SESSION_QUEUE_SIZE):
        self.websocket = websocket
        self.room = room
        self.user = user
        self.store = store
        self.registry = registry
        self.history = history
        self.session_id = str(uuid.uuid4())
        self.state = SessionState.CONNECTING
        self.outbound: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=queue_size)
        self.writer_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self.message_count = 0

    def __repr__(self):
        return f"ConnectionSession({self.session_id[:8]}, room={self.room!r}, user={self.user!r}, state={self.state.value})"

    async def _call(self, fn: Callable, *args):
        """Run a blocking store call off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def deliver(self, data: str) -> bool:
        """Queue a raw event for this client. Called by the broadcast bridge."""
        if self.state == SessionState.CLOSED:
            return False
        try:
            self.outbound.put_nowait(data)
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full for {self!r}, closing slow session")
            if self._close_task is None:
                self._close_task = asyncio.get_running_loop().create_task(self.close(CLOSE_TRY_AGAIN_LATER, "Outbound queue overflow"))
            return False
        return True

    async def run(self):
        """Join, replay history, then read until the client goes away."""
        try:
            if await self.join():
                await self.read_loop()
        finally:
            await self.leave()

    async def join(self) -> bool:
        try:
            await self._call(self.store.add_active_room, self.room)
            # Registered before the history read so nothing published after
            # the read can be missed; buffered until history_load is sent.
            self.registry.join(self.room, self)
            entries = await self._call(self.history.read_range, self.room, 0, -1)
        except StoreError as e:
            logger.error(f"Rejecting join for {self!r}: store unavailable: {e}")
            self.registry.leave(self.room, self)
            self.state = SessionState.CLOSED
            await self.websocket.close(code=CLOSE_INTERNAL_ERROR, reason="Store unavailable")
            return False

        try:
            await self.websocket.accept()
            self.state = SessionState.JOINED
            logger.info(f"User {self.user} joined room {self.room} as session {self.session_id} ({len(entries)} history entries)")

            if entries:
                history_event = Event(type=EventKind.HISTORY_LOAD.value, room=self.room, payload=decode_entries(entries))
                await self.websocket.send_text(history_event.model_dump_json())
        except Exception as e:
            logger.warning(f"Client for session {self.session_id} went away during join: {e}")
            return False

        self.writer_task = asyncio.create_task(self.write_loop())
        return True

    async def write_loop(self):
        while True:
            data = await self.outbound.get()
            if data is None:
                break
            try:
                await self.websocket.send_text(data)
            except Exception as e:
                logger.debug(f"Send failed for {self!r}: {e}")
                break

    async def read_loop(self):
        while True:
            try:
                data = await self.websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for session {self.session_id} in room {self.room}")
                return
            except Exception as e:
                logger.error(f"Error receiving from session {self.session_id} in room {self.room}: {e}", exc_info=True)
                return

            self.message_count += 1
            try:
                message = InboundMessage.model_validate_json(data)
            except ValidationError as e:
                logger.warning(f"Malformed frame #{self.message_count} from session {self.session_id}, closing: {e}")
                await self.close(CLOSE_INVALID_DATA, "Malformed message")
                return

            logger.debug(f"Received {message.kind} #{self.message_count} from session {self.session_id} in room {self.room}")
            try:
                await self.handle(message)
            except StoreError as e:
                logger.error(f"Store call failed handling {message.kind} in room {self.room}: {e}")
                await self.send_error(f"Could not process {message.kind}: store unavailable")

    async def handle(self, message: InboundMessage):
        kind = message.kind
        if kind in SERVER_ONLY_KINDS:
            logger.warning(f"Session {self.session_id} sent server-only kind {kind!r}, ignoring")
            await self.send_error(f"Clients may not send {kind!r} events")
        elif kind == EventKind.CLEAR.value:
            event = Event(type=kind, room=self.room, username=self.user, payload=message.payload)
            await self._call(self.history.clear, self.room, event.model_dump_json())
        elif kind == EventKind.UNDO.value:
            remaining = await self._call(self.history.undo, self.room)
            await self.publish(Event(type=EventKind.REFRESH.value, room=self.room, username=self.user, payload=decode_entries(remaining)))
        else:
            event = Event(type=kind, room=self.room, username=self.user, payload=message.payload)
            # Appended and published in one store step so live order matches history order
            await self._call(self.history.record, self.room, event.model_dump_json())

    async def publish(self, event):
        data = event if isinstance(event, str) else event.model_dump_json()
        await self._call(self.store.publish_message, data)

    async def send_error(self, detail: str):
        error = Event(type=EventKind.ERROR.value, room=self.room, payload={"detail": detail})
        self.deliver(error.model_dump_json())

    async def close(self, code: int = 1000, reason: str = ""):
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket for session {self.session_id}: {e}")

    async def leave(self):
        self.registry.leave(self.room, self)
        if self.writer_task is not None:
            self.writer_task.cancel()
            try:
                await self.writer_task
            except asyncio.CancelledError:
                pass
            self.writer_task = None
        await self.close()
        logger.info(f"User {self.user} left room {self.room} (session {self.session_id}, {self.message_count} messages)")

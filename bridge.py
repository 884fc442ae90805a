import asyncio
import json
from typing import Optional

from pydantic import ValidationError

from backend import StoreError
from constants import BRIDGE_POLL_TIMEOUT, BRIDGE_RECONNECT_DELAY
from logging_config import get_logger
from registry import RoomRegistry
from schemas.events import Event

logger = get_logger(__name__)


class BroadcastBridge:
    """Relays the shared live channel to locally connected sessions.

    There is one subscription per process for all rooms; each message is
    routed by its `room` field. Events sent by local clients also come back
    through here, so there is a single delivery path and senders see their
    own echo.
    """

    def __init__(self, store, registry: RoomRegistry, poll_timeout: float = BRIDGE_POLL_TIMEOUT, reconnect_delay: float = BRIDGE_RECONNECT_DELAY):
        self.store = store
        self.registry = registry
        self.poll_timeout = poll_timeout
        self.reconnect_delay = reconnect_delay
        self.subscription = None
        self.task: Optional[asyncio.Task] = None
        self.dropped = 0

    async def start(self) -> asyncio.Task:
        """Subscribe, then run the receive loop in the background.

        Subscribing happens before this returns so a store that cannot be
        reached at boot fails startup.
        """
        loop = asyncio.get_running_loop()
        self.subscription = await loop.run_in_executor(None, self.store.subscribe)
        self.task = asyncio.create_task(self.run())
        logger.info("Broadcast bridge started")
        return self.task

    async def stop(self):
        if self.task is not None:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        self._close_subscription()
        logger.info("Broadcast bridge stopped")

    def _close_subscription(self):
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None

    async def run(self):
        loop = asyncio.get_running_loop()
        while True:
            try:
                if self.subscription is None:
                    self.subscription = await loop.run_in_executor(None, self.store.subscribe)
                    logger.info("Broadcast bridge resubscribed to live channel")
                data = await loop.run_in_executor(None, self.subscription.get_message, self.poll_timeout)
            except StoreError as e:
                logger.error(f"Broadcast bridge lost its subscription: {e}")
                self._close_subscription()
                await asyncio.sleep(self.reconnect_delay)
                continue
            except Exception as e:
                self.dropped += 1
                logger.error(f"Error receiving from live channel, skipping: {e}", exc_info=True)
                continue

            if data is None:
                continue
            try:
                await self.dispatch(data)
            except Exception as e:
                self.dropped += 1
                logger.error(f"Error dispatching live message: {e}", exc_info=True)

    async def dispatch(self, data: str) -> int:
        """Deliver one raw message to the local members of its room.

        Malformed messages are dropped; returns the number of sessions reached.
        """
        try:
            event = Event.model_validate_json(data)
        except (ValidationError, json.JSONDecodeError, ValueError) as e:
            self.dropped += 1
            logger.warning(f"Dropping malformed live message ({len(data)} bytes): {e}")
            return 0

        delivered = await self.registry.for_each(event.room, lambda session: session.deliver(data))
        logger.debug(f"Delivered {event.type} event to {delivered} local sessions in room {event.room}")
        return delivered

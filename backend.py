import functools
import json
import queue
import threading
import uuid
from typing import Iterable, List, Optional, Set, Tuple, Union

import redis

from constants import REDIS_DB, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, STORE_BACKEND
from redis_keys import REDIS_ACTIVE_ROOMS_KEY, REDIS_HISTORY_KEY, REDIS_LIVE_CHANNEL
from logging_config import get_logger

logger = get_logger(__name__)


class StoreError(Exception):
    """A shared-store primitive failed (connection lost, timeout, ...)."""


# Removes the newest undoable entry of a history list in one atomic step.
# KEYS[1] = history list, ARGV[1] = tombstone, ARGV[2..] = undoable kinds.
# Returns {removed or "", remaining...}.
UNDO_SCRIPT = """
local entries = redis.call('LRANGE', KEYS[1], 0, -1)
local undoable = {}
for i = 2, #ARGV do
    undoable[ARGV[i]] = true
end
local removed = ''
for i = #entries, 1, -1 do
    local ok, decoded = pcall(cjson.decode, entries[i])
    if ok and type(decoded) == 'table' and type(decoded['type']) == 'string' and undoable[decoded['type']] then
        redis.call('LSET', KEYS[1], i - 1, ARGV[1])
        redis.call('LREM', KEYS[1], -1, ARGV[1])
        removed = entries[i]
        break
    end
end
local remaining = redis.call('LRANGE', KEYS[1], 0, -1)
table.insert(remaining, 1, removed)
return remaining
"""


def entry_kind(entry: str) -> Optional[str]:
    """Return the `type` of a serialized history entry, or None if it has none."""
    try:
        decoded = json.loads(entry)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(decoded, dict):
        return None
    kind = decoded.get("type")
    return kind if isinstance(kind, str) else None


def _encode_message(message: Union[str, dict]) -> str:
    return message if isinstance(message, str) else json.dumps(message)


def _store_call(method):
    """Translate redis errors into StoreError and keep the health flag current."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            result = method(self, *args, **kwargs)
        except redis.RedisError as e:
            if self.healthy:
                logger.error(f"Store entered degraded mode during {method.__name__}: {e}")
            self.healthy = False
            raise StoreError(f"{method.__name__} failed: {e}") from e
        if not self.healthy:
            logger.info(f"Store recovered during {method.__name__}")
        self.healthy = True
        return result

    return wrapper


class RedisSubscription:
    """Subscription to the live channel backed by a redis-py PubSub."""

    def __init__(self, pubsub):
        self.pubsub = pubsub
        self.dropped = 0

    def get_message(self, timeout: float = 1.0) -> Optional[str]:
        try:
            message = self.pubsub.get_message(timeout=timeout, ignore_subscribe_messages=True)
        except redis.RedisError as e:
            raise StoreError(f"pub/sub receive failed: {e}") from e
        except UnicodeDecodeError as e:
            # Bytes that are not UTF-8 cannot be an event; drop just this message
            self.dropped += 1
            logger.warning(f"Dropping live message that is not valid UTF-8: {e}")
            return None
        if message is None or message.get("type") != "message":
            return None
        return message["data"]

    def close(self):
        try:
            self.pubsub.close()
        except redis.RedisError as e:
            logger.debug(f"Error closing pub/sub connection: {e}")


class RedisBackend:
    def __init__(self, host: str = REDIS_HOST, port: int = REDIS_PORT, password: Optional[str] = REDIS_PASSWORD, db: int = REDIS_DB, redis_client=None, pubsub_client=None):
        logger.info(f"Initializing RedisBackend with connection to {host}:{port}/{db}")
        self.host = host
        self.port = port
        self.healthy = True
        self.redis_client = redis_client or redis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or redis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        self._undo_script = self.redis_client.register_script(UNDO_SCRIPT)

    @_store_call
    def ping(self) -> bool:
        self.redis_client.ping()
        self.pubsub_client.ping()
        return True

    @_store_call
    def append_history(self, room: str, entry: str) -> int:
        """Append one serialized event and mark the room active, atomically."""
        key = REDIS_HISTORY_KEY.format(room=room)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.rpush(key, entry)
        pipe.sadd(REDIS_ACTIVE_ROOMS_KEY, room)
        length, _ = pipe.execute()
        logger.debug(f"Appended entry to {key}, length now {length}")
        return length

    @_store_call
    def append_and_publish(self, room: str, entry: str) -> int:
        """Append, mark active and publish in one MULTI so live order matches history order."""
        key = REDIS_HISTORY_KEY.format(room=room)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.rpush(key, entry)
        pipe.sadd(REDIS_ACTIVE_ROOMS_KEY, room)
        pipe.publish(REDIS_LIVE_CHANNEL, entry)
        length, _, subscribers = pipe.execute()
        logger.debug(f"Appended and published entry for {key}, length {length}, {subscribers} subscribers")
        return length

    @_store_call
    def read_history(self, room: str, start: int = 0, end: int = -1) -> List[str]:
        key = REDIS_HISTORY_KEY.format(room=room)
        return self.redis_client.lrange(key, start, end)

    @_store_call
    def truncate_history(self, room: str) -> bool:
        key = REDIS_HISTORY_KEY.format(room=room)
        deleted = self.redis_client.delete(key)
        logger.debug(f"Truncated {key}: deleted={deleted}")
        return bool(deleted)

    @_store_call
    def truncate_and_publish(self, room: str, message: Union[str, dict]) -> bool:
        key = REDIS_HISTORY_KEY.format(room=room)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.publish(REDIS_LIVE_CHANNEL, _encode_message(message))
        deleted, _ = pipe.execute()
        logger.debug(f"Truncated {key} and published, deleted={deleted}")
        return bool(deleted)

    @_store_call
    def undo_history(self, room: str, undoable_kinds: Iterable[str]) -> Tuple[Optional[str], List[str]]:
        key = REDIS_HISTORY_KEY.format(room=room)
        kinds = sorted(undoable_kinds)
        if not kinds:
            return None, self.redis_client.lrange(key, 0, -1)
        tombstone = f"__undo__:{uuid.uuid4().hex}"
        result = self._undo_script(keys=[key], args=[tombstone, *kinds])
        removed, remaining = result[0], list(result[1:])
        return (removed or None), remaining

    @_store_call
    def add_active_room(self, room: str) -> bool:
        return bool(self.redis_client.sadd(REDIS_ACTIVE_ROOMS_KEY, room))

    @_store_call
    def remove_active_room(self, room: str) -> bool:
        return bool(self.redis_client.srem(REDIS_ACTIVE_ROOMS_KEY, room))

    @_store_call
    def active_rooms(self) -> Set[str]:
        return set(self.redis_client.smembers(REDIS_ACTIVE_ROOMS_KEY))

    @_store_call
    def publish_message(self, message: Union[str, dict]) -> int:
        """Publish a message on the live channel shared by every instance."""
        subscribers = self.redis_client.publish(REDIS_LIVE_CHANNEL, _encode_message(message))
        logger.debug(f"Published message to {REDIS_LIVE_CHANNEL}, {subscribers} subscribers")
        return subscribers

    @_store_call
    def subscribe(self) -> RedisSubscription:
        logger.debug(f"Subscribing to Redis channel {REDIS_LIVE_CHANNEL}")
        pubsub = self.pubsub_client.pubsub()
        pubsub.subscribe(REDIS_LIVE_CHANNEL)
        return RedisSubscription(pubsub)


class MemorySubscription:
    def __init__(self, backend: "MemoryBackend"):
        self.backend = backend
        self.messages: "queue.Queue[str]" = queue.Queue()

    def get_message(self, timeout: float = 1.0) -> Optional[str]:
        try:
            return self.messages.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        self.backend._unsubscribe(self)


class MemoryBackend:
    """Single-process store with the same primitives as RedisBackend.

    Used for local development without Redis and by the test suite. Several
    registries sharing one MemoryBackend behave like several server instances
    sharing one Redis.
    """

    def __init__(self):
        logger.info("Initializing in-memory store backend")
        self.healthy = True
        self._lock = threading.Lock()
        self._history: dict[str, List[str]] = {}
        self._active: Set[str] = set()
        self._subscriptions: List[MemorySubscription] = []

    def ping(self) -> bool:
        return True

    def append_history(self, room: str, entry: str) -> int:
        with self._lock:
            log = self._history.setdefault(room, [])
            log.append(entry)
            self._active.add(room)
            return len(log)

    def append_and_publish(self, room: str, entry: str) -> int:
        with self._lock:
            log = self._history.setdefault(room, [])
            log.append(entry)
            self._active.add(room)
            self._fan_out(entry)
            return len(log)

    def read_history(self, room: str, start: int = 0, end: int = -1) -> List[str]:
        with self._lock:
            log = self._history.get(room, [])
            # LRANGE semantics: inclusive end, negative indexes count from the tail
            stop = len(log) + end + 1 if end < 0 else end + 1
            return list(log[start:stop])

    def truncate_history(self, room: str) -> bool:
        with self._lock:
            return self._history.pop(room, None) is not None

    def truncate_and_publish(self, room: str, message: Union[str, dict]) -> bool:
        with self._lock:
            cleared = self._history.pop(room, None) is not None
            self._fan_out(_encode_message(message))
            return cleared

    def undo_history(self, room: str, undoable_kinds: Iterable[str]) -> Tuple[Optional[str], List[str]]:
        kinds = set(undoable_kinds)
        with self._lock:
            log = self._history.get(room, [])
            removed = None
            for index in range(len(log) - 1, -1, -1):
                if entry_kind(log[index]) in kinds:
                    removed = log.pop(index)
                    break
            if not log:
                self._history.pop(room, None)
            return removed, list(log)

    def add_active_room(self, room: str) -> bool:
        with self._lock:
            added = room not in self._active
            self._active.add(room)
            return added

    def remove_active_room(self, room: str) -> bool:
        with self._lock:
            removed = room in self._active
            self._active.discard(room)
            return removed

    def active_rooms(self) -> Set[str]:
        with self._lock:
            return set(self._active)

    def _fan_out(self, data: str) -> int:
        # Caller holds _lock, so publish order matches the order of log writes
        for subscription in self._subscriptions:
            subscription.messages.put_nowait(data)
        return len(self._subscriptions)

    def publish_message(self, message: Union[str, dict]) -> int:
        with self._lock:
            subscribers = self._fan_out(_encode_message(message))
        logger.debug(f"Published message in memory, {subscribers} subscribers")
        return subscribers

    def subscribe(self) -> MemorySubscription:
        subscription = MemorySubscription(self)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: MemorySubscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def reset(self):
        """Drop all history and room bookkeeping; subscriptions stay open."""
        with self._lock:
            self._history.clear()
            self._active.clear()


def create_backend(kind: str = STORE_BACKEND):
    if kind == "memory":
        return MemoryBackend()
    if kind == "redis":
        return RedisBackend()
    raise ValueError(f"Unknown STORE_BACKEND {kind!r}, expected 'redis' or 'memory'")


store_backend = create_backend()

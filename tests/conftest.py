"""Shared fixtures. The app runs on the in-memory store; store-level tests
also run against RedisBackend over fakeredis."""
import asyncio
import os

os.environ["STORE_BACKEND"] = "memory"
os.environ["UNDOABLE_KINDS"] = "chat"
os.environ.setdefault("BRIDGE_POLL_TIMEOUT", "0.05")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import fakeredis
import pytest
from fastapi.testclient import TestClient

from backend import MemoryBackend, RedisBackend, store_backend
from registry import RoomRegistry


class FakeSession:
    """Stands in for a ConnectionSession on the delivery side."""

    def __init__(self, name: str = "s"):
        self.name = name
        self.received = []

    def deliver(self, data: str) -> bool:
        self.received.append(data)
        return True

    def __repr__(self):
        return f"FakeSession({self.name})"


def make_redis_backend(server=None) -> RedisBackend:
    """RedisBackend over fakeredis; both clients share one fake server."""
    server = server or fakeredis.FakeServer()
    return RedisBackend(
        redis_client=fakeredis.FakeRedis(server=server, decode_responses=True),
        pubsub_client=fakeredis.FakeRedis(server=server, decode_responses=True),
    )


@pytest.fixture(params=["memory", "redis"])
def store(request):
    """Each store-backed test runs against both backends."""
    if request.param == "redis":
        return make_redis_backend()
    return MemoryBackend()


@pytest.fixture
def memory_store():
    return MemoryBackend()


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def next_message(subscription, attempts=20):
    """Poll a store subscription until it yields a message."""
    for _ in range(attempts):
        data = subscription.get_message(timeout=0.1)
        if data is not None:
            return data
    raise AssertionError("no message received")


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def client():
    from app import app

    store_backend.reset()
    with TestClient(app) as test_client:
        yield test_client
    store_backend.reset()

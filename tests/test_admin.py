import json

import pytest

from admin import AdminOps
from backend import StoreError, store_backend
from conftest import next_message
from history import HistoryLog
from schemas.rooms import RoomState


@pytest.fixture
def admin(store):
    return AdminOps(store, HistoryLog(store))


def chat(room, payload):
    return json.dumps({"type": "chat", "room": room, "username": "a", "payload": payload})


def test_room_lifecycle(admin, store):
    assert admin.room_state("r") == RoomState.ABSENT
    store.add_active_room("r")
    assert admin.room_state("r") == RoomState.ACTIVE
    assert admin.list_rooms() == ["r"]

    assert admin.destroy_room("r") == RoomState.ACTIVE
    assert admin.room_state("r") == RoomState.ABSENT
    assert admin.list_rooms() == []


def test_first_write_activates_room(admin, store):
    store.append_history("written", chat("written", 1))
    assert admin.room_state("written") == RoomState.ACTIVE


def test_destroy_clears_history_and_broadcasts(admin, store):
    subscription = store.subscribe()
    store.append_history("r", chat("r", 1))

    admin.destroy_room("r")

    assert store.read_history("r") == []
    assert "r" not in admin.list_rooms()
    assert json.loads(next_message(subscription)) == {"type": "clear", "room": "r", "username": "", "payload": None}


def test_destroy_unknown_room_is_noop_success(admin):
    assert admin.destroy_room("ghost") == RoomState.ABSENT
    assert admin.destroy_room("ghost") == RoomState.ABSENT


def test_list_rooms_endpoint(client):
    with client.websocket_connect("/connect?room=beta&user=a"):
        pass
    with client.websocket_connect("/connect?room=alpha&user=a"):
        pass

    response = client.get("/rooms")
    assert response.status_code == 200
    assert response.json() == ["alpha", "beta"]
    assert client.get("/admin/rooms").json() == ["alpha", "beta"]


def test_destroy_endpoint_resets_connected_clients(client):
    with client.websocket_connect("/connect?room=doomed&user=a") as ws:
        ws.send_json({"type": "chat", "payload": "bye"})
        ws.receive_json()

        response = client.get("/destroy", params={"room": "doomed"})
        assert response.status_code == 200
        assert response.text == "Destroyed"

        cleared = ws.receive_json()

    assert cleared == {"type": "clear", "room": "doomed", "username": "", "payload": None}
    assert store_backend.read_history("doomed") == []
    assert "doomed" not in client.get("/rooms").json()


def test_destroy_endpoint_is_idempotent(client):
    assert client.get("/destroy?room=never-existed").text == "Destroyed"
    assert client.get("/admin/destroy?room=never-existed").text == "Destroyed"


def test_destroy_requires_room(client):
    assert client.get("/destroy").status_code == 422
    assert client.get("/destroy?room=").status_code == 422


def test_store_outage_surfaces_as_503(client, monkeypatch):
    def broken():
        raise StoreError("active_rooms failed: connection refused")

    monkeypatch.setattr(store_backend, "active_rooms", broken)
    response = client.get("/rooms")
    assert response.status_code == 503


def test_health(client, monkeypatch):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"

    def down():
        raise StoreError("ping failed")

    monkeypatch.setattr(store_backend, "ping", down)
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "degraded"

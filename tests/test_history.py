import json
import threading

import pytest

from conftest import next_message
from history import HistoryLog, UndoPolicy


def entry(kind, payload, room="r", username="alice"):
    return json.dumps({"type": kind, "room": room, "username": username, "payload": payload})


@pytest.fixture
def history(store):
    return HistoryLog(store, UndoPolicy({"chat"}))


def test_append_then_read_round_trips_exactly(history):
    raw = '{"type":"chat","room":"r","username":"alice","payload":{"text":"h\\u00e9llo","n":[1,2.5,null]}}'
    history.append("r", raw)
    assert history.read_range("r") == [raw]


def test_read_range_is_append_ordered_and_sliceable(history):
    for i in range(5):
        history.append("r", entry("chat", i))
    assert [json.loads(e)["payload"] for e in history.read_range("r")] == [0, 1, 2, 3, 4]
    assert [json.loads(e)["payload"] for e in history.read_range("r", 1, 2)] == [1, 2]
    assert [json.loads(e)["payload"] for e in history.read_range("r", -2, -1)] == [3, 4]
    assert history.read_range("other") == []


def test_append_marks_room_active(history, store):
    history.append("fresh", entry("chat", "x", room="fresh"))
    assert "fresh" in store.active_rooms()


def test_truncate_empties_the_log(history):
    history.append("r", entry("chat", 1))
    assert history.truncate("r") is True
    assert history.read_range("r") == []
    assert history.truncate("r") is False


def test_undo_skips_non_undoable_and_stops_when_none_left(history):
    c1, c2, u = entry("chat", "c1"), entry("chat", "c2"), entry("marker", "u")
    for e in (c1, c2, u):
        history.append("r", e)

    assert history.undo("r") == [c1, u]
    assert history.read_range("r") == [c1, u]

    assert history.undo("r") == [u]
    assert history.undo("r") == [u]
    assert history.undo("r") == [u]
    assert history.read_range("r") == [u]


def test_undo_removes_only_the_newest_undoable(history):
    c1, c2 = entry("chat", "c1"), entry("chat", "c2")
    history.append("r", c1)
    history.append("r", c2)
    assert history.undo("r") == [c1]


def test_undo_on_empty_log_is_noop(history):
    assert history.undo("r") == []


def test_unparseable_entries_are_never_undone(history):
    c1 = entry("chat", "c1")
    history.append("r", c1)
    history.append("r", "not json")
    history.append("r", '["chat"]')
    assert history.undo("r") == ["not json", '["chat"]']
    assert history.undo("r") == ["not json", '["chat"]']


def test_undo_policy_is_explicit(store):
    draw_only = HistoryLog(store, UndoPolicy({"draw"}))
    chat, stroke = entry("chat", "hi"), entry("draw", [0, 0, 5, 5])
    draw_only.append("r", stroke)
    draw_only.append("r", chat)

    assert draw_only.undo("r") == [chat]
    assert draw_only.policy.is_undoable("draw")
    assert not draw_only.policy.is_undoable("chat")
    assert not draw_only.policy.is_undoable(None)


def test_empty_policy_never_removes(store):
    history = HistoryLog(store, UndoPolicy(()))
    history.append("r", entry("chat", 1))
    assert history.undo("r") == [entry("chat", 1)]


def test_concurrent_appends_lose_nothing(history):
    writers = 20

    def write(i):
        history.append("r", entry("chat", i, username=f"user{i}"))

    threads = [threading.Thread(target=write, args=(i,)) for i in range(writers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    entries = history.read_range("r")
    assert len(entries) == writers
    assert sorted(json.loads(e)["payload"] for e in entries) == list(range(writers))


def test_record_appends_and_publishes(history, store):
    subscription = store.subscribe()
    raw = entry("chat", "live")

    assert history.record("r", raw) == 1

    assert history.read_range("r") == [raw]
    assert next_message(subscription) == raw
    assert "r" in store.active_rooms()
    subscription.close()


def test_clear_truncates_and_publishes(history, store):
    subscription = store.subscribe()
    history.append("r", entry("chat", 1))
    marker = entry("clear", None)

    assert history.clear("r", marker) is True

    assert history.read_range("r") == []
    assert next_message(subscription) == marker
    subscription.close()


def test_concurrent_records_publish_in_history_order(history, store):
    subscription = store.subscribe()
    writers = 20

    def write(i):
        history.record("r", entry("chat", i, username=f"user{i}"))

    threads = [threading.Thread(target=write, args=(i,)) for i in range(writers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    published = [next_message(subscription) for _ in range(writers)]
    assert published == history.read_range("r")
    subscription.close()

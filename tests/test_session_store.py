import itertools
import json

import pytest

from chatcart import session_store as session_store_module
from chatcart.errors import PersistenceError
from chatcart.session_store import SessionStore


@pytest.fixture
def ticking_clock(monkeypatch):
    ticks = itertools.count(1000)
    monkeypatch.setattr(session_store_module.time, "time", lambda: float(next(ticks)))


def test_messages_are_kept_in_order(tmp_path):
    store = SessionStore(tmp_path / "sessions.json")
    store.add_message("s", "user", "add ceramide serum\nplease")
    store.add_message("s", "assistant", "Added 1 x 5X Ceramide Barrier Repair Serum.", {"intent": "add_line"})
    messages = store.get_messages("s")
    assert [message.role for message in messages] == ["user", "assistant"]
    assert messages[1].meta == {"intent": "add_line"}
    summary = store.list_sessions()[0]
    assert summary.title == "add ceramide serum"


def test_get_messages_returns_a_copy(tmp_path):
    store = SessionStore(tmp_path / "sessions.json")
    store.add_message("s", "user", "hi")
    store.get_messages("s").clear()
    assert len(store.get_messages("s")) == 1
    assert store.get_messages("unknown") == []


def test_state_survives_reload(tmp_path):
    path = tmp_path / "sessions.json"
    store = SessionStore(path)
    store.add_message("s", "user", "hi")
    store.save_cart("s", {"session_id": "s", "items": [], "voucher_code": "WELCOME10"})
    ticket_id = store.create_ticket({"subject": "Refund", "category": "return_refund"})

    reopened = SessionStore(path)
    assert reopened.get_messages("s")[0].content == "hi"
    assert reopened.load_cart("s")["voucher_code"] == "WELCOME10"
    assert reopened.get_ticket(ticket_id)["subject"] == "Refund"


def test_load_cart_returns_detached_snapshot(tmp_path):
    store = SessionStore(tmp_path / "sessions.json")
    store.save_cart("s", {"session_id": "s", "items": [{"qty": 1}]})
    store.load_cart("s")["items"][0]["qty"] = 5
    assert store.load_cart("s")["items"][0]["qty"] == 1
    assert store.load_cart("other") is None


def test_cart_only_session_is_listed(tmp_path):
    store = SessionStore(tmp_path / "sessions.json")
    store.save_cart("cart-only", {"session_id": "cart-only", "items": []})
    assert [summary.session_id for summary in store.list_sessions()] == ["cart-only"]


def test_delete_cart(tmp_path):
    path = tmp_path / "sessions.json"
    store = SessionStore(path)
    store.save_cart("s", {"session_id": "s", "items": []})
    store.delete_cart("s")
    assert store.load_cart("s") is None
    assert json.loads(path.read_text(encoding="utf-8"))["carts"] == {}


def test_ticket_ids_are_unique(tmp_path):
    store = SessionStore(tmp_path / "sessions.json")
    first = store.create_ticket({"subject": "a"})
    second = store.create_ticket({"subject": "b"})
    assert first != second
    assert store.get_ticket(first)["id"] == first
    assert "created_at" in store.get_ticket(second)
    assert store.get_ticket("missing") is None


def test_least_recent_sessions_are_pruned(tmp_path, ticking_clock):
    store = SessionStore(tmp_path / "sessions.json", max_sessions=2)
    store.save_cart("a", {"session_id": "a", "items": []})
    store.add_message("a", "user", "first")
    store.add_message("b", "user", "second")
    store.add_message("c", "user", "third")
    assert [summary.session_id for summary in store.list_sessions()] == ["c", "b"]
    assert store.get_messages("a") == []
    assert store.load_cart("a") is None


def test_corrupt_file_is_ignored(tmp_path):
    path = tmp_path / "sessions.json"
    path.write_text("{not json", encoding="utf-8")
    store = SessionStore(path)
    assert store.list_sessions() == []


def test_write_failure_raises_persistence_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    store = SessionStore(blocker / "sessions.json")
    with pytest.raises(PersistenceError):
        store.add_message("s", "user", "hi")
    # Memory keeps the message even though the file write failed.
    assert store.get_messages("s")[0].content == "hi"


def test_store_without_path_stays_in_memory():
    store = SessionStore()
    store.add_message("s", "user", "hi")
    assert store.get_messages("s")[0].content == "hi"

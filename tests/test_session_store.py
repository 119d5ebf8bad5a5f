import json

import pytest

from src.partner.config import SESSIONS_KEY
from src.partner.core.app_state import AppState
from src.partner.domain.chat_models import Message, MessageRole
from src.partner.infrastructure.session_store import SessionStore


@pytest.fixture
def store(kv):
    return SessionStore(kv)


def test_ensure_session_creates_and_activates(store):
    sid = store.ensure_session(None, "Photosynthesis")
    assert store.state.active_session_id == sid
    assert store.count_sessions() == 1
    assert store.get_session(sid).title == "Photosynthesis"


def test_ensure_session_returns_existing_id_unchanged(store):
    sid = store.ensure_session(None, "First")
    assert store.ensure_session(sid, "Ignored") == sid
    assert store.count_sessions() == 1
    assert store.get_session(sid).title == "First"


def test_new_session_is_inserted_first(store):
    older = store.ensure_session(None, "Older")
    newer = store.ensure_session(None, "Newer")
    assert [s.id for s in store.list_sessions()][0] == newer
    assert store.state.active_session_id == newer
    assert older != newer


def test_append_to_unknown_session_is_noop(store, kv):
    assert store.append_message("missing", Message(role=MessageRole.USER, text="hi")) is False
    assert store.count_sessions() == 0
    assert kv.get(SESSIONS_KEY) is None


def test_append_refreshes_last_updated(store):
    sid = store.ensure_session(None, "Chat")
    before = store.get_session(sid).last_updated
    store.append_message(sid, Message(role=MessageRole.USER, text="hello"))
    assert store.get_session(sid).last_updated >= before


def test_persist_and_rehydrate_round_trip(kv):
    store = SessionStore(kv)
    sid = store.ensure_session(None, "Algebra")
    store.append_message(sid, Message(role=MessageRole.USER, text="What is x?", image="data:image/png;base64,AAA"))
    store.append_message(sid, Message(role=MessageRole.MODEL, text="A variable."))

    raw = json.loads(kv.get(SESSIONS_KEY))
    assert raw[0]["id"] == sid
    assert "lastUpdated" in raw[0]
    assert raw[0]["messages"][0]["role"] == "user"

    reloaded = SessionStore(kv, AppState())
    assert [m.text for m in reloaded.list_messages(sid)] == ["What is x?", "A variable."]
    assert reloaded.list_messages(sid)[0].image == "data:image/png;base64,AAA"
    assert reloaded.state.active_session_id == sid


def test_malformed_storage_rehydrates_empty(kv, caplog):
    kv.set(SESSIONS_KEY, "{not json")
    with caplog.at_level("WARNING"):
        store = SessionStore(kv)
    assert store.list_sessions() == []
    assert store.state.active_session_id is None
    assert any("malformed" in rec.getMessage() for rec in caplog.records)


def test_wrong_shape_storage_rehydrates_empty(kv):
    kv.set(SESSIONS_KEY, json.dumps({"id": "x", "title": "not a list"}))
    assert SessionStore(kv).list_sessions() == []


def test_invalid_session_entry_rehydrates_empty(kv):
    kv.set(SESSIONS_KEY, json.dumps([{"title": "missing id and timestamp", "messages": "nope"}]))
    assert SessionStore(kv).count_sessions() == 0


def test_list_sessions_orders_by_last_updated(kv):
    kv.set(
        SESSIONS_KEY,
        json.dumps(
            [
                {"id": "old", "title": "Old", "messages": [], "lastUpdated": 100},
                {"id": "new", "title": "New", "messages": [], "lastUpdated": 200},
            ]
        ),
    )
    store = SessionStore(kv)
    assert [s.id for s in store.list_sessions()] == ["new", "old"]
    # Rehydrate activates the first stored session
    assert store.state.active_session_id == "old"


def test_update_and_remove_message(store):
    sid = store.ensure_session(None, "Chat")
    msg = Message(role=MessageRole.MODEL, text="")
    store.append_message(sid, msg)
    assert store.update_message_text(sid, msg.id, "partial") is True
    assert store.get_message(sid, msg.id).text == "partial"
    assert store.update_message_text(sid, "nope", "x") is False
    assert store.remove_message(sid, msg.id) is True
    assert store.remove_message(sid, msg.id) is False
    assert store.list_messages(sid) == []


def test_reads_return_copies(store):
    sid = store.ensure_session(None, "Chat")
    store.append_message(sid, Message(role=MessageRole.USER, text="original"))
    store.list_messages(sid)[0].text = "mutated"
    store.get_session(sid).messages.clear()
    assert store.list_messages(sid)[0].text == "original"


def test_delete_active_session_clears_pointer(store):
    sid = store.ensure_session(None, "Chat")
    assert store.delete_session(sid) is True
    assert store.state.active_session_id is None
    assert store.delete_session(sid) is False


def test_delete_other_session_keeps_pointer(store):
    first = store.ensure_session(None, "First")
    second = store.ensure_session(None, "Second")
    store.delete_session(first)
    assert store.state.active_session_id == second


def test_select_and_new_chat(store):
    first = store.ensure_session(None, "First")
    store.ensure_session(None, "Second")
    assert store.select_session(first) is True
    assert store.state.active_session_id == first
    assert store.select_session("missing") is False
    store.new_chat()
    assert store.state.active_session_id is None
    summaries = store.list_summaries()
    assert len(summaries) == 2
    assert not any(s.active for s in summaries)

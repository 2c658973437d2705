"""Tests for the JSON session store: load/migrate, merge-patch saves and the message map."""

import json

import pytest

from branchsync.session_store import SessionStore


@pytest.fixture
def store(tmp_path):
    return SessionStore(path=tmp_path / "sessions.json")


# ── Load / save ─────────────────────────────────────────────────────────────


def test_missing_file_is_empty_store(store):
    assert store.load() == {"channels": {}}


def test_malformed_file_is_empty_store(store):
    store.path.write_text("{not json")
    assert store.load() == {"channels": {}}


def test_wrong_shape_is_empty_store(store):
    store.path.write_text(json.dumps({"channels": []}))
    assert store.load() == {"channels": {}}


def test_legacy_document_is_migrated(store):
    store.path.write_text(json.dumps({
        "channels": {
            "C1": {
                "session_id": "S1",
                "working_dir": "/repo",
                "mode": "plan",
                "created_at": 1,
                "last_active_at": 1,
                "threads": {"1.0": {"session_id": "T1", "working_dir": "/repo", "mode": "plan"}},
            }
        }
    }))
    channel = store.get_session("C1")
    assert channel["previous_session_ids"] == []
    assert channel["message_map"] == {}
    assert channel["path_configured"] is False
    thread = channel["threads"]["1.0"]
    assert thread["forked_from"] is None
    assert thread["path_configured"] is False


def test_save_writes_readable_json(store):
    store.save_session("C1", {"session_id": "S1"})
    data = json.loads(store.path.read_text())
    assert data["channels"]["C1"]["session_id"] == "S1"


# ── Merge-patch ─────────────────────────────────────────────────────────────


def test_save_session_creates_defaults(store):
    session = store.save_session("C1", {"session_id": "S1"})
    assert session["mode"] == "default"
    assert session["previous_session_ids"] == []
    assert session["message_map"] == {}


def test_save_session_preserves_created_at(store):
    first = store.save_session("C1", {"session_id": "S1"})
    second = store.save_session("C1", {"mode": "plan", "created_at": 0})
    assert second["created_at"] == first["created_at"]
    assert second["session_id"] == "S1"
    assert second["mode"] == "plan"


def test_path_config_locked_once_set(store):
    store.save_session("C1", {"path_configured": True, "configured_path": "/a", "configured_by": "U1"})
    session = store.save_session("C1", {"configured_path": "/b", "working_dir": "/b"})
    assert session["configured_path"] == "/a"
    assert session["working_dir"] == "/b"


def test_save_session_keeps_message_map_and_threads(store):
    store.record_message("C1", "1.0", {"sdk_message_id": "A", "session_id": "S1", "type": "assistant"})
    store.save_thread_session("C1", "1.0", {"session_id": "T1"})
    session = store.save_session("C1", {"mode": "plan", "message_map": {}, "threads": {}})
    assert "1.0" in session["message_map"]
    assert "1.0" in session["threads"]


# ── Reset / delete ──────────────────────────────────────────────────────────


def test_reset_moves_id_to_previous(store):
    store.save_session("C1", {"session_id": "S1"})
    session = store.reset_session("C1")
    assert session["session_id"] is None
    assert session["previous_session_ids"] == ["S1"]


def test_reset_twice_does_not_duplicate(store):
    store.save_session("C1", {"session_id": "S1"})
    store.reset_session("C1")
    store.save_session("C1", {"session_id": "S1"})
    session = store.reset_session("C1")
    assert session["previous_session_ids"] == ["S1"]


def test_reset_keeps_message_map(store):
    store.save_session("C1", {"session_id": "S1"})
    store.record_message("C1", "1.0", {"sdk_message_id": "A", "session_id": "S1", "type": "assistant"})
    store.reset_session("C1")
    assert store.get_message_map("C1")["1.0"]["session_id"] == "S1"


def test_reset_unknown_channel(store):
    assert store.reset_session("nope") is None


def test_delete_session(store):
    store.save_session("C1", {"session_id": "S1"})
    assert store.delete_session("C1") is True
    assert store.get_session("C1") is None
    assert store.delete_session("C1") is False


# ── Thread sessions ─────────────────────────────────────────────────────────


def test_thread_defaults_copied_on_creation_only(store):
    store.save_session("C1", {"session_id": "S1", "working_dir": "/repo", "mode": "plan"})
    thread = store.save_thread_session("C1", "1.0", {"session_id": "T1"})
    assert thread["working_dir"] == "/repo"
    assert thread["mode"] == "plan"

    store.save_session("C1", {"working_dir": "/elsewhere", "mode": "acceptEdits"})
    thread = store.get_thread_session("C1", "1.0")
    assert thread["working_dir"] == "/repo"
    assert thread["mode"] == "plan"


def test_thread_without_channel_creates_minimal_channel(store):
    store.save_thread_session("C9", "1.0", {"session_id": "T1"})
    assert store.get_session("C9")["session_id"] is None
    assert store.get_thread_session("C9", "1.0")["session_id"] == "T1"


def test_resume_point_never_overwritten(store):
    store.save_thread_session("C1", "1.0", {"resume_session_at_message_id": "A"})
    thread = store.save_thread_session("C1", "1.0", {"resume_session_at_message_id": "B"})
    assert thread["resume_session_at_message_id"] == "A"


def test_get_thread_session_missing(store):
    assert store.get_thread_session("C1", "1.0") is None


# ── Message map ─────────────────────────────────────────────────────────────


def test_record_message_is_append_only(store):
    assert store.record_message("C1", "1.0", {"sdk_message_id": "A", "session_id": "S1", "type": "assistant"})
    assert not store.record_message("C1", "1.0", {"sdk_message_id": "B", "session_id": "S2", "type": "user"})
    assert store.get_message_map("C1")["1.0"]["sdk_message_id"] == "A"


def test_record_message_drops_none_fields(store):
    store.record_message("C1", "1.0", {"sdk_message_id": "A", "session_id": "S1", "type": "user", "parent_slack_ts": None})
    assert "parent_slack_ts" not in store.get_message_map("C1")["1.0"]


def test_backfill_permalink_only_once(store):
    store.record_message("C1", "1.0", {"sdk_message_id": "A", "session_id": "S1", "type": "assistant"})
    store.backfill_permalink("C1", "1.0", "https://one")
    store.backfill_permalink("C1", "1.0", "https://two")
    assert store.get_message_map("C1")["1.0"]["permalink"] == "https://one"


def test_backfill_unknown_entry_is_noop(store):
    store.backfill_permalink("C1", "9.9", "https://one")
    assert store.get_session("C1") is None


def test_synced_message_ids(store):
    store.record_message("C1", "1.0", {"sdk_message_id": "A", "session_id": "S1", "type": "assistant"})
    store.record_message("C1", "2.0", {"sdk_message_id": "A", "session_id": "S1", "type": "assistant", "is_continuation": True})
    store.record_message("C1", "activity_B", {"sdk_message_id": "B", "session_id": "S1", "type": "assistant"})
    assert store.get_synced_message_ids("C1") == {"A", "B"}
    assert store.get_synced_message_ids("C2") == set()

"""Tests for the watch scheduler: lifecycle, guard, offsets and rate changes."""

import asyncio
import json

import pytest
import pytest_asyncio

from branchsync import jsonl_reader
from branchsync.session_store import SessionStore
from branchsync.surface import MemorySurface
from branchsync.watcher import WatchScheduler


def _user(uuid, text):
    return {"type": "user", "uuid": uuid, "sessionId": "S1", "message": {"role": "user", "content": text}}


def _append(path, *entries):
    with open(path, "a") as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")


@pytest.fixture
def projects(tmp_path, monkeypatch):
    root = tmp_path / "projects"
    monkeypatch.setattr(jsonl_reader, "HISTORY_PATH", root)
    return root


@pytest.fixture
def store(tmp_path):
    s = SessionStore(path=tmp_path / "sessions.json")
    s.save_session("C1", {"session_id": "S1", "working_dir": "/repo", "update_rate_seconds": 5})
    return s


@pytest.fixture
def transcript(projects):
    path = projects / "-repo" / "S1.jsonl"
    path.parent.mkdir(parents=True)
    _append(path, _user("old", "before the watch started"))
    return path


@pytest_asyncio.fixture
async def scheduler(store):
    s = WatchScheduler(store)
    yield s
    s.stop_all()


@pytest.mark.asyncio
async def test_start_requires_session(scheduler, store, projects):
    assert await scheduler.start_watching("C9", MemorySurface("C9")) == "No active session to watch"
    store.reset_session("C1")
    assert await scheduler.start_watching("C1", MemorySurface("C1")) == "No active session to watch"


@pytest.mark.asyncio
async def test_start_requires_transcript(scheduler, projects):
    error = await scheduler.start_watching("C1", MemorySurface("C1"))
    assert error.startswith("Transcript not found")
    assert not scheduler.is_watching("C1")


@pytest.mark.asyncio
async def test_start_from_end_of_transcript(scheduler, transcript):
    surface = MemorySurface("C1")
    assert await scheduler.start_watching("C1", surface) is None
    state = scheduler.get_watcher("C1")
    assert state.file_offset == transcript.stat().st_size
    assert state.update_rate == 5
    assert state.timer is not None

    _append(transcript, _user("new", "after"))
    result = await scheduler.poll_now("C1")
    assert result.synced == 1
    assert [m["text"].split("\n")[-1] for m in surface.visible()] == ["after"]
    assert state.file_offset == transcript.stat().st_size


@pytest.mark.asyncio
async def test_stop_cancels_timer_and_discards(scheduler, transcript):
    await scheduler.start_watching("C1", MemorySurface("C1"))
    timer = scheduler.get_watcher("C1").timer
    assert scheduler.stop_watching("C1") is True
    assert not scheduler.is_watching("C1")
    await asyncio.sleep(0)
    assert timer.cancelled()
    assert scheduler.stop_watching("C1") is False


@pytest.mark.asyncio
async def test_in_progress_tick_is_skipped(scheduler, transcript):
    await scheduler.start_watching("C1", MemorySurface("C1"))
    state = scheduler.get_watcher("C1")
    state.poll_in_progress = True
    assert await scheduler.poll_now("C1") is None


@pytest.mark.asyncio
async def test_shrunk_transcript_rereads_from_start(scheduler, transcript):
    surface = MemorySurface("C1")
    await scheduler.start_watching("C1", surface)
    transcript.write_text(json.dumps(_user("fresh", "rotated")) + "\n")

    result = await scheduler.poll_now("C1")
    assert result.synced == 1
    assert surface.visible()[0]["text"].endswith("rotated")


@pytest.mark.asyncio
async def test_timer_drives_ticks(store, transcript):
    store.save_session("C1", {"update_rate_seconds": 1})
    scheduler = WatchScheduler(store)
    surface = MemorySurface("C1")
    await scheduler.start_watching("C1", surface)

    _append(transcript, _user("new", "tick tock"))
    for _ in range(40):
        await asyncio.sleep(0.1)
        if surface.visible():
            break
    scheduler.stop_all()
    assert surface.visible()[0]["text"].endswith("tick tock")


@pytest.mark.asyncio
async def test_update_watch_rate_restarts_timer(scheduler, transcript):
    await scheduler.start_watching("C1", MemorySurface("C1"))
    state = scheduler.get_watcher("C1")
    old_timer = state.timer

    assert scheduler.update_watch_rate("C1", None, 3) is None
    assert state.update_rate == 3
    assert state.throttle.min_interval == 3
    assert state.timer is not old_timer
    await asyncio.sleep(0)
    assert old_timer.cancelled()

    assert scheduler.update_watch_rate("C1", None, 50) is None
    assert state.update_rate == 10
    assert scheduler.update_watch_rate("C2", None, 3) == "Not watching this conversation"


@pytest.mark.asyncio
async def test_restart_replaces_existing_watch(scheduler, transcript):
    await scheduler.start_watching("C1", MemorySurface("C1"))
    first = scheduler.get_watcher("C1")
    await scheduler.start_watching("C1", MemorySurface("C1"))
    assert scheduler.get_watcher("C1") is not first
    assert len(scheduler.watches) == 1


@pytest.mark.asyncio
async def test_thread_watch_and_session_reset(scheduler, store, transcript, projects):
    store.save_thread_session("C1", "1.0", {"session_id": "S1"})
    assert await scheduler.start_watching("C1", MemorySurface("C1"), thread_ts="1.0") is None
    assert scheduler.is_watching("C1", "1.0")
    assert scheduler.get_watcher("C1", "1.0").key == "C1_1.0"

    assert scheduler.on_session_reset("C1", "1.0") is True
    assert not scheduler.is_watching("C1", "1.0")


@pytest.mark.asyncio
async def test_stop_all(scheduler, store, transcript):
    store.save_thread_session("C1", "1.0", {"session_id": "S1"})
    await scheduler.start_watching("C1", MemorySurface("C1"))
    await scheduler.start_watching("C1", MemorySurface("C1"), thread_ts="1.0")
    assert scheduler.stop_all() == 2
    assert scheduler.watches == []


@pytest.mark.asyncio
async def test_to_dict(scheduler, transcript):
    await scheduler.start_watching("C1", MemorySurface("C1"))
    info = scheduler.get_watcher("C1").to_dict()
    assert info["key"] == "C1"
    assert info["session_id"] == "S1"
    assert info["turn_state"] == "idle"
    assert info["last_result"] is None

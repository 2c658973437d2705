"""Per-conversation watch loops over agent transcripts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from branchsync.activity import ActivityBatcher, Throttle
from branchsync.activity_log import ActivityLog
from branchsync.jsonl_reader import get_file_size, transcript_path
from branchsync.message_sync import SyncEngine, SyncResult
from branchsync.session_store import SessionStore
from branchsync.surface import MessagingSurface, Renderer
from branchsync.utils import (
    DEFAULT_THREAD_CHAR_LIMIT,
    DEFAULT_UPDATE_RATE_SECONDS,
    clamp_char_limit,
    clamp_update_rate,
    conversation_key,
    now_ms,
)

log = logging.getLogger(__name__)


@dataclass
class WatchState:
    """Runtime state of one watched conversation. Never persisted."""

    channel_id: str
    thread_ts: str | None
    session_id: str
    working_dir: str
    file_path: Path
    file_offset: int
    update_rate: float
    surface: MessagingSurface
    throttle: Throttle
    batcher: ActivityBatcher
    engine: SyncEngine
    timer: asyncio.Task | None = None
    tick: asyncio.Task | None = None
    poll_in_progress: bool = False
    started_at: int = field(default_factory=now_ms)
    last_result: SyncResult | None = None

    @property
    def key(self) -> str:
        return conversation_key(self.channel_id, self.thread_ts)

    def to_dict(self) -> dict[str, Any]:
        last = self.last_result
        return {
            "key": self.key,
            "channel_id": self.channel_id,
            "thread_ts": self.thread_ts,
            "session_id": self.session_id,
            "file_path": str(self.file_path),
            "file_offset": self.file_offset,
            "update_rate_seconds": self.update_rate,
            "poll_in_progress": self.poll_in_progress,
            "turn_state": self.engine.state.value,
            "pending_activity": len(self.batcher.batch),
            "last_post_time": self.batcher.last_post_time,
            "started_at": self.started_at,
            "last_result": vars(last) if last else None,
        }


class WatchScheduler:
    """Owns every watch: the conversation key -> WatchState table and its timers."""

    def __init__(
        self,
        store: SessionStore,
        activity_log: ActivityLog | None = None,
        renderer: Renderer | None = None,
    ) -> None:
        self._store = store
        self._activity_log = activity_log
        self._renderer = renderer
        self._watches: dict[str, WatchState] = {}

    @property
    def watches(self) -> list[WatchState]:
        return list(self._watches.values())

    def is_watching(self, channel_id: str, thread_ts: str | None = None) -> bool:
        return conversation_key(channel_id, thread_ts) in self._watches

    def get_watcher(self, channel_id: str, thread_ts: str | None = None) -> WatchState | None:
        return self._watches.get(conversation_key(channel_id, thread_ts))

    async def start_watching(
        self,
        channel_id: str,
        surface: MessagingSurface,
        thread_ts: str | None = None,
    ) -> str | None:
        """Start tailing the conversation's transcript from its current end.

        Returns an error message, or None on success. Watching an already
        watched conversation restarts it.
        """
        if thread_ts:
            session = self._store.get_thread_session(channel_id, thread_ts)
        else:
            session = self._store.get_session(channel_id)
        if not session or not session.get("session_id"):
            return "No active session to watch"
        session_id = session["session_id"]
        working_dir = session.get("working_dir") or ""
        path = transcript_path(session_id, working_dir)
        if not path.exists():
            return f"Transcript not found for session {session_id}: {path}"

        key = conversation_key(channel_id, thread_ts)
        if key in self._watches:
            self.stop_watching(channel_id, thread_ts)

        update_rate = clamp_update_rate(session.get("update_rate_seconds") or DEFAULT_UPDATE_RATE_SECONDS)
        char_limit = clamp_char_limit(session.get("thread_char_limit") or DEFAULT_THREAD_CHAR_LIMIT)
        throttle = Throttle(update_rate)
        batcher = ActivityBatcher(surface, throttle, thread_ts, char_limit, self._renderer)
        engine = SyncEngine(
            self._store, surface, batcher, throttle, channel_id,
            thread_ts=thread_ts,
            session_id=session_id,
            char_limit=char_limit,
            renderer=self._renderer,
            activity_log=self._activity_log,
        )
        state = WatchState(
            channel_id=channel_id,
            thread_ts=thread_ts,
            session_id=session_id,
            working_dir=working_dir,
            file_path=path,
            file_offset=get_file_size(path),
            update_rate=update_rate,
            surface=surface,
            throttle=throttle,
            batcher=batcher,
            engine=engine,
        )
        self._watches[key] = state
        state.timer = asyncio.create_task(self._run(state))
        log.info("Watching %s (session %s) from offset %d every %ss", key, session_id, state.file_offset, update_rate)
        return None

    def stop_watching(self, channel_id: str, thread_ts: str | None = None) -> bool:
        """Cancel the watch. Unflushed activity is dropped; the store is untouched."""
        state = self._watches.pop(conversation_key(channel_id, thread_ts), None)
        if state is None:
            return False
        for task in (state.timer, state.tick):
            if task is not None and not task.done():
                task.cancel()
        state.batcher.discard()
        log.info("Stopped watching %s", state.key)
        return True

    def stop_all(self) -> int:
        watches = self.watches
        for state in watches:
            self.stop_watching(state.channel_id, state.thread_ts)
        return len(watches)

    def on_session_reset(self, channel_id: str, thread_ts: str | None = None) -> bool:
        """The watched session went away: stop following its transcript."""
        return self.stop_watching(channel_id, thread_ts)

    def update_watch_rate(self, channel_id: str, thread_ts: str | None, seconds: float) -> str | None:
        state = self.get_watcher(channel_id, thread_ts)
        if state is None:
            return "Not watching this conversation"
        state.update_rate = clamp_update_rate(seconds)
        state.throttle.min_interval = state.update_rate
        if state.timer is not None:
            state.timer.cancel()
        state.timer = asyncio.create_task(self._run(state))
        log.info("Watch rate for %s set to %ss", state.key, state.update_rate)
        return None

    # ── Poll loop ───────────────────────────────────────────────────────────

    async def _run(self, state: WatchState) -> None:
        while True:
            await asyncio.sleep(state.update_rate)
            if state.poll_in_progress:
                log.debug("Previous tick for %s still running, skipping", state.key)
                continue
            state.tick = asyncio.create_task(self._tick(state))

    async def poll_now(self, channel_id: str, thread_ts: str | None = None) -> SyncResult | None:
        """Run one tick inline. None if not watching or a tick is already running."""
        state = self.get_watcher(channel_id, thread_ts)
        if state is None or state.poll_in_progress:
            return None
        await self._tick(state)
        return state.last_result

    async def _tick(self, state: WatchState) -> None:
        state.poll_in_progress = True
        try:
            size = get_file_size(state.file_path)
            if size < state.file_offset:
                log.info("Transcript %s shrank (%d < %d), rereading from start", state.file_path, size, state.file_offset)
                state.file_offset = 0
            result = await state.engine.sync(state.file_path, state.file_offset)
            state.file_offset = result.new_offset
            state.last_result = result
        except Exception:
            log.exception("Watch tick failed for %s", state.key)
        finally:
            state.poll_in_progress = False

"""Activity batching and throttled in-place updates for an in-flight turn.

Tool activity is posted as one combined message per flush. Thinking gets its
own rolling message, updated in place while open and finalized when the block
completes. Every surface mutation of a conversation goes through one shared
minimum-interval throttle; updates inside the window are coalesced, not dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from branchsync.formatting import format_activity_batch, format_thinking_message
from branchsync.jsonl_reader import TranscriptRecord
from branchsync.surface import MessagingSurface, Renderer, SplittingRenderer, fetch_permalink
from branchsync.utils import DEFAULT_THREAD_CHAR_LIMIT, THINKING_PREVIEW_LENGTH, parse_timestamp_ms

log = logging.getLogger(__name__)


@dataclass
class ActivityEntry:
    timestamp: int
    type: str  # thinking | tool_start | tool_complete | generating | starting
    tool: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_use_id: str | None = None
    duration_ms: int | None = None
    thinking_content: str | None = None
    thinking_preview: str | None = None
    thinking_in_progress: bool = False
    generating_chars: int | None = None
    line_count: int | None = None
    is_error: bool = False
    tool_output_preview: str | None = None
    thread_message_ts: str | None = None
    thread_message_link: str | None = None


def build_activity_entries(record: TranscriptRecord) -> list[ActivityEntry]:
    """Activity entries for the content blocks of an assistant record, in block order."""
    if record.type != "assistant" or not isinstance(record.content, list):
        return []
    timestamp = parse_timestamp_ms(record.timestamp)
    entries: list[ActivityEntry] = []
    for block in record.content:
        if not isinstance(block, dict):
            continue
        bt = block.get("type")
        if bt == "thinking":
            content = block.get("thinking", "")
            preview = content[:THINKING_PREVIEW_LENGTH] + ("..." if len(content) > THINKING_PREVIEW_LENGTH else "")
            entries.append(ActivityEntry(
                timestamp=timestamp, type="thinking", thinking_content=content, thinking_preview=preview,
            ))
        elif bt == "tool_use" and block.get("name"):
            entries.append(ActivityEntry(
                timestamp=timestamp,
                type="tool_start",
                tool=block["name"],
                tool_input=block.get("input") or {},
                tool_use_id=block.get("id"),
            ))
        elif bt == "text" and block.get("text"):
            entries.append(ActivityEntry(timestamp=timestamp, type="generating", generating_chars=len(block["text"])))
    return entries


class Throttle:
    """Minimum interval between surface mutations of one conversation."""

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._last: float | None = None

    def remaining(self) -> float:
        """Seconds until the next mutation is allowed."""
        if self._last is None:
            return 0.0
        return max(0.0, self.min_interval - (self._clock() - self._last))

    def mark(self) -> None:
        self._last = self._clock()


class RollingMessage:
    """A surface message updated in place, with at most one write in flight."""

    def __init__(
        self,
        surface: MessagingSurface,
        throttle: Throttle,
        thread_ts: str | None = None,
        ts: str | None = None,
        content: str = "",
    ) -> None:
        self._surface = surface
        self._throttle = throttle
        self.thread_ts = thread_ts
        self.ts = ts
        self.content = content
        self._pending: str | None = None
        self._deferred: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def updating(self) -> bool:
        return not self._idle.is_set()

    @property
    def has_pending(self) -> bool:
        return self._deferred is not None

    async def push(self, content: str) -> None:
        """Write *content* now if the throttle allows, else coalesce into one deferred write."""
        self._pending = content
        if self._deferred is not None:
            return
        delay = self._throttle.remaining()
        if delay > 0 or self.updating:
            self._deferred = asyncio.create_task(self._apply_later(delay))
            return
        await self._apply()

    async def _apply_later(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self._idle.wait()
        while (remaining := self._throttle.remaining()) > 0:
            await asyncio.sleep(remaining)
        # Cleared before the write starts so settle() never cancels a write in flight.
        self._deferred = None
        await self._apply()

    async def _apply(self) -> None:
        content, self._pending = self._pending, None
        if content is None or (self.ts is not None and content == self.content):
            return
        self._idle.clear()
        try:
            if self.ts is None:
                self.ts = await self._surface.post(content, self.thread_ts)
            else:
                await self._surface.update(self.ts, content)
            self.content = content
        except Exception:
            log.warning("Rolling update of %s failed", self.ts, exc_info=True)
        finally:
            self._throttle.mark()
            self._idle.set()

    def cancel(self) -> None:
        """Drop a deferred write that has not started."""
        if self._deferred is not None:
            self._deferred.cancel()
            self._deferred = None
        self._pending = None

    async def settle(self) -> None:
        """Drop any deferred write and wait for the one in flight, if any."""
        self.cancel()
        await self._idle.wait()

    async def replace(self, content: str) -> None:
        """Final in-place write, ordered after any write already in flight."""
        await self.settle()
        self._pending = content
        await self._apply()

    async def delete(self) -> None:
        await self.settle()
        if self.ts is None:
            return
        try:
            await self._surface.delete(self.ts)
        finally:
            self._throttle.mark()


class ActivityBatcher:
    """Turn-scoped activity state for one watched conversation."""

    def __init__(
        self,
        surface: MessagingSurface,
        throttle: Throttle,
        thread_ts: str | None = None,
        char_limit: int = DEFAULT_THREAD_CHAR_LIMIT,
        renderer: Renderer | None = None,
    ) -> None:
        self._surface = surface
        self._throttle = throttle
        self._renderer = renderer or SplittingRenderer()
        self.thread_ts = thread_ts
        self.char_limit = char_limit
        self.batch: list[ActivityEntry] = []
        self.turn_entries: list[ActivityEntry] = []
        self._tools: dict[str, ActivityEntry] = {}
        self._posted: RollingMessage | None = None
        self._posted_entries: list[ActivityEntry] = []
        # Batches of finished turns whose last in-place update is still deferred.
        self._retired: list[RollingMessage] = []
        self.posted_tool_use_ids: set[str] = set()
        self._thinking: RollingMessage | None = None
        self._thinking_entry: ActivityEntry | None = None
        self.last_post_time: float | None = None

    @property
    def thinking_open(self) -> bool:
        return self._thinking_entry is not None

    @property
    def posted_batch_ts(self) -> str | None:
        return self._posted.ts if self._posted else None

    def add(self, entry: ActivityEntry) -> None:
        """Queue an entry for the next flush."""
        self.batch.append(entry)
        self.turn_entries.append(entry)
        if entry.tool_use_id:
            self._tools[entry.tool_use_id] = entry

    def note(self, entry: ActivityEntry) -> None:
        """Record an entry in the turn log without posting it."""
        self.turn_entries.append(entry)

    # ── Flushing ────────────────────────────────────────────────────────────

    async def flush(self, reason: str) -> str | None:
        """Post the pending batch as one message, regardless of the throttle window.

        A failed post drops the batch. Returns the posted ts.
        """
        if not self.batch:
            return None
        entries, self.batch = self.batch, []
        content = format_activity_batch(entries)
        if not content:
            return None

        if self._posted is not None:
            # Superseded: pending in-place updates of the old batch are stale.
            self._posted.cancel()
        try:
            ts = await self._surface.post(content, self.thread_ts)
        except Exception:
            log.warning("Dropping activity batch of %d entries (%s flush failed)", len(entries), reason, exc_info=True)
            return None
        finally:
            self._throttle.mark()

        self.last_post_time = time.time()
        self._posted = RollingMessage(self._surface, self._throttle, self.thread_ts, ts=ts, content=content)
        self._posted_entries = entries
        self.posted_tool_use_ids = {e.tool_use_id for e in entries if e.tool_use_id}
        link = await fetch_permalink(self._surface, ts)
        for entry in entries:
            entry.thread_message_ts = ts
            entry.thread_message_link = link
        log.debug("Flushed %d activity entries to %s (%s)", len(entries), ts, reason)
        return ts

    async def on_tool_result(self, tool_use_id: str, output: str, is_error: bool, timestamp: int | None = None) -> bool:
        """Mark a tool complete. Updates its posted batch in place if that batch is still the latest."""
        entry = self._tools.get(tool_use_id)
        if entry is None:
            return False
        entry.type = "tool_complete"
        entry.is_error = is_error
        entry.line_count = output.count("\n") + 1 if output else 0
        entry.tool_output_preview = output[:300] if output else None
        if timestamp is not None and timestamp >= entry.timestamp:
            entry.duration_ms = timestamp - entry.timestamp

        if any(e is entry for e in self.batch):
            return True
        if self._posted is None or tool_use_id not in self.posted_tool_use_ids:
            return False
        await self._posted.push(format_activity_batch(self._posted_entries))
        return True

    # ── Thinking ────────────────────────────────────────────────────────────

    async def open_thinking(self, entry: ActivityEntry) -> None:
        """Start a new rolling thinking message, finishing any open one first."""
        await self.finish_thinking(entry.timestamp)
        # Tool activity that came first is shown first.
        await self.flush("long_content")
        entry.thinking_in_progress = True
        self._thinking_entry = entry
        self.turn_entries.append(entry)
        self._thinking = RollingMessage(self._surface, self._throttle, self.thread_ts)
        await self._thinking.push(format_thinking_message(entry, self.char_limit))

    def extends_thinking(self, content: str) -> bool:
        """Whether *content* is the open thinking block, grown by later deltas."""
        current = self._thinking_entry.thinking_content if self._thinking_entry else None
        return bool(current) and content.startswith(current)

    async def update_thinking(self, content: str) -> None:
        if self._thinking_entry is None or self._thinking is None:
            return
        self._thinking_entry.thinking_content = content
        await self._thinking.push(format_thinking_message(self._thinking_entry, self.char_limit))

    async def finish_thinking(self, finished_at: int | None = None) -> None:
        """Finalize the open thinking message; past the size limit it becomes an attachment."""
        entry, message = self._thinking_entry, self._thinking
        if entry is None or message is None:
            return
        self._thinking_entry = None
        self._thinking = None
        entry.thinking_in_progress = False
        if finished_at is not None and finished_at > entry.timestamp:
            entry.duration_ms = finished_at - entry.timestamp
        content = entry.thinking_content or ""

        try:
            if len(content) <= self.char_limit:
                await message.replace(format_thinking_message(entry, self.char_limit))
                ts = message.ts
            else:
                await message.delete()
                ts = await self._post_attachment(entry, content)
        except Exception:
            log.warning("Failed to finalize thinking message %s", message.ts, exc_info=True)
            return
        if ts:
            entry.thread_message_ts = ts
            entry.thread_message_link = await fetch_permalink(self._surface, ts)

    async def _post_attachment(self, entry: ActivityEntry, content: str) -> str | None:
        header = format_thinking_message(entry, self.char_limit, attached=True)
        rendered = await self._renderer.render(content, self.char_limit, self.thread_ts)
        try:
            header_ts = await self._surface.post(header, self.thread_ts)
            if rendered.uploaded_ts is None:
                for part in rendered.parts:
                    await self._surface.post(part, self.thread_ts)
        finally:
            self._throttle.mark()
        return rendered.uploaded_ts or header_ts

    # ── Turn lifecycle ──────────────────────────────────────────────────────

    async def complete_turn(self, finished_at: int | None = None) -> None:
        """Finalize thinking and flush, ahead of the turn's response."""
        await self.finish_thinking(finished_at)
        await self.flush("complete")

    def reset_turn(self) -> list[ActivityEntry]:
        """Drop turn-scoped state and return the turn's entries."""
        entries = self.turn_entries
        self.turn_entries = []
        self.batch = []
        self._tools = {}
        self._posted_entries = []
        self.posted_tool_use_ids = set()
        self._retired = [m for m in self._retired if m.has_pending]
        if self._posted is not None and self._posted.has_pending:
            self._retired.append(self._posted)
        self._posted = None
        return entries

    def discard(self) -> None:
        """Drop everything without touching the surface."""
        for message in (self._posted, self._thinking, *self._retired):
            if message is not None:
                message.cancel()
        self._retired = []
        self._thinking = None
        self._thinking_entry = None
        self.reset_turn()

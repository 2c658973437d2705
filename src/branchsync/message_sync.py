"""One poll tick: replay new transcript records onto the surface, in log order.

Delivery is at-least-once. A record counts as synced once the message map has
an entry for its uuid, so a record that failed part way is simply processed
again on a later tick and records already mapped are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from branchsync.activity import ActivityBatcher, ActivityEntry, Throttle, build_activity_entries
from branchsync.activity_log import ActivityLog
from branchsync.formatting import RESPONSE_PREFIX, format_response_header, format_user_message
from branchsync.jsonl_reader import TranscriptRecord, extract_text_content, extract_tool_results, read_new
from branchsync.session_store import SessionStore
from branchsync.surface import MessagingSurface, Renderer, SplittingRenderer, fetch_permalink
from branchsync.utils import DEFAULT_THREAD_CHAR_LIMIT, conversation_key, parse_timestamp_ms

log = logging.getLogger(__name__)


class TurnState(Enum):
    IDLE = "idle"
    ACCUMULATING_TURN = "accumulating_turn"


@dataclass
class SyncResult:
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    new_offset: int = 0


class SyncEngine:
    """Mirrors one conversation's transcript into one surface conversation."""

    def __init__(
        self,
        store: SessionStore,
        surface: MessagingSurface,
        batcher: ActivityBatcher,
        throttle: Throttle,
        channel_id: str,
        thread_ts: str | None = None,
        session_id: str | None = None,
        char_limit: int = DEFAULT_THREAD_CHAR_LIMIT,
        renderer: Renderer | None = None,
        activity_log: ActivityLog | None = None,
    ) -> None:
        self._store = store
        self._surface = surface
        self._batcher = batcher
        self._throttle = throttle
        self._renderer = renderer or SplittingRenderer()
        self._activity_log = activity_log
        self.channel_id = channel_id
        self.thread_ts = thread_ts
        self.session_id = session_id
        self.char_limit = char_limit
        self.state = TurnState.IDLE

    @property
    def conversation_key(self) -> str:
        return conversation_key(self.channel_id, self.thread_ts)

    async def sync(self, file_path: str | Path, from_offset: int) -> SyncResult:
        """Process everything appended since *from_offset*.

        The returned offset stops at the start of the first record that failed,
        so it is read again next time.
        """
        records, new_offset = read_new(file_path, from_offset)
        result = SyncResult(new_offset=new_offset)
        if not records:
            await self._batcher.flush("timer")
            return result

        synced_ids = self._store.get_synced_message_ids(self.channel_id)
        hold_at: int | None = None
        for record in records:
            if not record.uuid or record.uuid in synced_ids:
                result.skipped += 1
                continue
            try:
                ok = await self._process(record)
            except Exception:
                log.exception("Failed to sync record %s in %s", record.uuid, self.conversation_key)
                ok = False
            if ok:
                result.synced += 1
                synced_ids.add(record.uuid)
            else:
                result.failed += 1
                if hold_at is None:
                    hold_at = record.start_offset

        if hold_at is not None:
            result.new_offset = hold_at
        await self._batcher.flush("timer")
        log.debug(
            "Synced %s: %d synced, %d skipped, %d failed, offset %d -> %d",
            self.conversation_key, result.synced, result.skipped, result.failed, from_offset, result.new_offset,
        )
        return result

    async def _process(self, record: TranscriptRecord) -> bool:
        if record.type == "user":
            return await self._process_user(record)
        return await self._process_assistant(record)

    # ── User records ────────────────────────────────────────────────────────

    async def _process_user(self, record: TranscriptRecord) -> bool:
        if isinstance(record.content, str):
            text = record.content
        else:
            results = extract_tool_results(record)
            timestamp = parse_timestamp_ms(record.timestamp)
            for tool_use_id, output, is_error in results:
                await self._batcher.on_tool_result(tool_use_id, output, is_error, timestamp)
            text = extract_text_content(record)
            if not text.strip():
                return self._record_synthetic("tool_result" if results else "empty", record)
        if not text.strip():
            return self._record_synthetic("empty", record)

        # Pending activity belongs before the message that follows it.
        await self._batcher.finish_thinking()
        await self._batcher.flush("long_content")
        try:
            ts = await self._surface.post(format_user_message(text, self.char_limit), self.thread_ts)
        except Exception:
            log.warning("Failed to post user message %s", record.uuid, exc_info=True)
            return False
        finally:
            self._throttle.mark()

        self._store.record_message(self.channel_id, ts, self._mapping(record, "user"))
        await self._backfill_permalink(ts)
        return True

    # ── Assistant records ───────────────────────────────────────────────────

    async def _process_assistant(self, record: TranscriptRecord) -> bool:
        entries = build_activity_entries(record)
        text = extract_text_content(record).strip()
        activity = [e for e in entries if e.type != "generating"]

        if not text and activity and self.state is TurnState.IDLE:
            self._batcher.add(ActivityEntry(timestamp=activity[0].timestamp, type="starting"))

        for entry in entries:
            if entry.type == "thinking":
                content = entry.thinking_content or ""
                if self._batcher.extends_thinking(content):
                    await self._batcher.update_thinking(content)
                else:
                    await self._batcher.open_thinking(entry)
            elif entry.type == "tool_start":
                await self._batcher.finish_thinking(entry.timestamp)
                self._batcher.add(entry)
            else:
                self._batcher.note(entry)

        if not text:
            if activity:
                self.state = TurnState.ACCUMULATING_TURN
            return self._record_synthetic("activity" if activity else "empty", record)
        return await self._post_response(record, text)

    async def _post_response(self, record: TranscriptRecord, text: str) -> bool:
        await self._batcher.complete_turn(parse_timestamp_ms(record.timestamp))

        posted: list[str] = []
        try:
            rendered = await self._renderer.render(text, self.char_limit - len(RESPONSE_PREFIX), self.thread_ts)
            total = len(rendered.parts)
            for index, part in enumerate(rendered.parts):
                posted.append(await self._surface.post(format_response_header(part, index, total), self.thread_ts))
        except Exception:
            log.warning(
                "Failed to post response %s (%d parts posted before the failure)",
                record.uuid, len(posted), exc_info=True,
            )
            return False
        finally:
            self._throttle.mark()
        if rendered.uploaded_ts:
            posted.append(rendered.uploaded_ts)

        for index, ts in enumerate(posted):
            mapping = self._mapping(record, "assistant")
            if index > 0:
                mapping["is_continuation"] = True
            self._store.record_message(self.channel_id, ts, mapping)
            await self._backfill_permalink(ts)

        await self._persist_activity(record, self._batcher.reset_turn())
        self.state = TurnState.IDLE
        return True

    # ── Ledger ──────────────────────────────────────────────────────────────

    def _mapping(self, record: TranscriptRecord, message_type: str) -> dict[str, Any]:
        return {
            "sdk_message_id": record.uuid,
            "session_id": record.session_id or self.session_id,
            "type": message_type,
            "parent_slack_ts": self.thread_ts,
        }

    def _record_synthetic(self, kind: str, record: TranscriptRecord) -> bool:
        """Mark a record that posts nothing as handled."""
        self._store.record_message(self.channel_id, f"{kind}_{record.uuid}", self._mapping(record, record.type))
        return True

    async def _backfill_permalink(self, ts: str) -> None:
        link = await fetch_permalink(self._surface, ts)
        try:
            self._store.backfill_permalink(self.channel_id, ts, link)
        except OSError:
            log.warning("Failed to backfill permalink for %s", ts, exc_info=True)

    async def _persist_activity(self, record: TranscriptRecord, entries: list[ActivityEntry]) -> None:
        if self._activity_log is None or not entries:
            return
        try:
            await self._activity_log.append(
                f"{self.conversation_key}_{record.uuid}",
                self.conversation_key,
                record.session_id or self.session_id,
                entries,
            )
        except Exception:
            log.warning("Failed to persist activity for %s", record.uuid, exc_info=True)

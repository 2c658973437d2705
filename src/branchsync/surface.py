"""Collaborator interfaces for the chat surface and renderer, plus in-process implementations."""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from branchsync.formatting import split_for_surface, truncate_with_closed_formatting
from branchsync.utils import permalink_fallback

log = logging.getLogger(__name__)


class MessagingSurface(Protocol):
    """A chat surface bound to one channel. All calls may raise."""

    channel_id: str

    async def post(self, content: str, thread_ts: str | None = None) -> str: ...

    async def update(self, ts: str, content: str) -> None: ...

    async def delete(self, ts: str) -> None: ...

    async def get_permalink(self, ts: str) -> str: ...


@dataclass
class Rendered:
    """Renderer output: inline parts to post in order and/or an already-posted attachment."""

    parts: list[str] = field(default_factory=list)
    uploaded_ts: str | None = None


class Renderer(Protocol):
    async def render(self, text: str, char_limit: int, thread_ts: str | None = None) -> Rendered: ...


Uploader = Callable[[str, "str | None"], Awaitable[str]]


class SplittingRenderer:
    """Inline when short; otherwise upload the full text or split it into continuation parts."""

    def __init__(self, uploader: Uploader | None = None) -> None:
        self._uploader = uploader

    async def render(self, text: str, char_limit: int, thread_ts: str | None = None) -> Rendered:
        if len(text) <= char_limit:
            return Rendered(parts=[text])
        if self._uploader is not None:
            uploaded_ts = await self._uploader(text, thread_ts)
            return Rendered(parts=[truncate_with_closed_formatting(text, char_limit)], uploaded_ts=uploaded_ts)
        return Rendered(parts=split_for_surface(text, char_limit))


async def fetch_permalink(surface: MessagingSurface, ts: str) -> str:
    """Permalink for *ts*; falls back to a constructed URL and never raises."""
    try:
        link = await surface.get_permalink(ts)
        if link:
            return link
    except Exception:
        log.warning("Failed to get permalink for %s, using fallback", ts, exc_info=True)
    return permalink_fallback(surface.channel_id, ts)


class MemorySurface:
    """In-process surface: keeps every message and mutation, logs each call."""

    def __init__(self, channel_id: str) -> None:
        self.channel_id = channel_id
        self.messages: dict[str, dict[str, Any]] = {}
        self.history: list[tuple[str, str, str]] = []
        self._base = int(time.time())
        self._counter = itertools.count(1)

    def _next_ts(self) -> str:
        return f"{self._base}.{next(self._counter):06d}"

    async def post(self, content: str, thread_ts: str | None = None) -> str:
        ts = self._next_ts()
        self.messages[ts] = {"ts": ts, "text": content, "thread_ts": thread_ts, "deleted": False}
        self.history.append(("post", ts, content))
        log.info("[%s] post %s: %s", self.channel_id, ts, content[:80])
        return ts

    async def update(self, ts: str, content: str) -> None:
        message = self.messages.get(ts)
        if message is None or message["deleted"]:
            raise KeyError(f"message_not_found: {ts}")
        message["text"] = content
        self.history.append(("update", ts, content))
        log.debug("[%s] update %s", self.channel_id, ts)

    async def delete(self, ts: str) -> None:
        message = self.messages.get(ts)
        if message is None or message["deleted"]:
            raise KeyError(f"message_not_found: {ts}")
        message["deleted"] = True
        self.history.append(("delete", ts, ""))
        log.debug("[%s] delete %s", self.channel_id, ts)

    async def get_permalink(self, ts: str) -> str:
        return permalink_fallback(self.channel_id, ts)

    def visible(self) -> list[dict[str, Any]]:
        """Messages not deleted, in posting order."""
        return [m for m in self.messages.values() if not m["deleted"]]

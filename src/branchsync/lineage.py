"""Fork-point resolution and derived thread sessions.

A fork point is read from the message map, never from the channel's live
session pointer: after a reset the channel's ``session_id`` is None but every
mapping entry still names the session that produced it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from branchsync.session_store import PATH_CONFIG_FIELDS, SessionStore
from branchsync.utils import ts_sort_key

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForkPoint:
    message_id: str
    session_id: str | None


@dataclass
class ThreadSessionResult:
    session: dict[str, Any]
    is_new_fork: bool


def _fork_point(entry: dict[str, Any]) -> ForkPoint:
    return ForkPoint(message_id=entry["sdk_message_id"], session_id=entry.get("session_id"))


def find_fork_point(store: SessionStore, channel_id: str, anchor_ts: str) -> ForkPoint | None:
    """Resolve where a branch anchored at *anchor_ts* should resume.

    Assistant anchors resolve to themselves; every part of a split message
    carries the same ``sdk_message_id`` so any part gives the same answer.
    User anchors resolve to the nearest strictly preceding assistant entry.
    Unknown anchors and legacy channels without a map return None.
    """
    message_map = store.get_message_map(channel_id)
    entry = message_map.get(anchor_ts)
    if entry is None:
        return None
    if entry.get("type") == "assistant":
        return _fork_point(entry)

    anchor_key = ts_sort_key(anchor_ts)
    if anchor_key is None:
        return None
    preceding = sorted(
        (key, ts)
        for ts in message_map
        if (key := ts_sort_key(ts)) is not None and key < anchor_key
    )
    for _, ts in reversed(preceding):
        candidate = message_map[ts]
        if candidate.get("type") == "assistant":
            return _fork_point(candidate)
    return None


def get_or_create_thread_session(
    store: SessionStore,
    channel_id: str,
    anchor_key: str,
    fork_point: ForkPoint | None,
    parent_thread_ts: str | None = None,
) -> ThreadSessionResult:
    """Return the thread session for *anchor_key*, creating it on first use.

    A second call returns the stored session unchanged, so a retried or
    repeated fork never re-anchors it.
    """
    existing = store.get_thread_session(channel_id, anchor_key)
    if existing is not None:
        return ThreadSessionResult(session=existing, is_new_fork=False)

    parent = None
    if parent_thread_ts:
        parent = store.get_thread_session(channel_id, parent_thread_ts)
    from_thread = parent is not None
    if parent is None:
        parent = store.get_session(channel_id) or {}

    snapshot: dict[str, Any] = {
        "session_id": None,
        "forked_from": fork_point.session_id if fork_point else None,
        "mode": parent.get("mode", "default"),
    }
    if parent.get("working_dir"):
        snapshot["working_dir"] = parent["working_dir"]
    for key in PATH_CONFIG_FIELDS:
        snapshot[key] = parent.get(key)
    for key in ("update_rate_seconds", "thread_char_limit"):
        if parent.get(key) is not None:
            snapshot[key] = parent[key]
    if from_thread:
        snapshot["forked_from_thread_ts"] = parent_thread_ts
    if fork_point is not None:
        snapshot["resume_session_at_message_id"] = fork_point.message_id

    session = store.save_thread_session(channel_id, anchor_key, snapshot)
    log.info(
        "Created fork %s/%s from session=%s at message=%s",
        channel_id, anchor_key, snapshot["forked_from"], fork_point.message_id if fork_point else None,
    )
    return ThreadSessionResult(session=session, is_new_fork=True)

"""JSON-document storage for channel sessions, thread sessions and the message map.

The whole document is re-read and re-written on every mutation. The process is
the only writer, so read-modify-write needs no locking here; a multi-process
deployment would have to add one behind these keyed operations.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from branchsync.utils import STORE_PATH, now_ms

log = logging.getLogger(__name__)

# Set once and never overwritten by a later save.
PATH_CONFIG_FIELDS = ("path_configured", "configured_path", "configured_by", "configured_at")
IMMUTABLE_FIELDS = ("created_at",)


def _empty_document() -> dict[str, Any]:
    return {"channels": {}}


def _default_session() -> dict[str, Any]:
    now = now_ms()
    return {
        "session_id": None,
        "working_dir": os.getcwd(),
        "mode": "default",
        "created_at": now,
        "last_active_at": now,
        "path_configured": False,
        "configured_path": None,
        "configured_by": None,
        "configured_at": None,
        "previous_session_ids": [],
    }


def _migrate(document: dict[str, Any]) -> None:
    """Fill fields added after a document was written, in place."""
    for channel in document["channels"].values():
        if "path_configured" not in channel:
            channel["path_configured"] = False
            channel["configured_path"] = None
            channel["configured_by"] = None
            channel["configured_at"] = None
        channel.setdefault("previous_session_ids", [])
        channel.setdefault("message_map", {})
        for thread in (channel.get("threads") or {}).values():
            if "path_configured" not in thread:
                for key in PATH_CONFIG_FIELDS:
                    thread[key] = channel.get(key)
            thread.setdefault("forked_from", None)
            thread.setdefault("previous_session_ids", [])


def _merge(existing: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Merge-patch *patch* onto *existing*, keeping immutable and already-set path fields."""
    merged = dict(existing)
    locked = existing.get("path_configured") is True
    for key, value in patch.items():
        if key in IMMUTABLE_FIELDS and existing.get(key) is not None:
            continue
        if locked and key in PATH_CONFIG_FIELDS:
            continue
        if key == "resume_session_at_message_id" and existing.get(key):
            continue
        merged[key] = value
    merged["last_active_at"] = now_ms()
    return merged


class SessionStore:
    """Keyed read-merge-write access to the persisted session document."""

    def __init__(self, path: Path = STORE_PATH) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    # ── Document ────────────────────────────────────────────────────────────

    def load(self) -> dict[str, Any]:
        """Load the document. Missing or malformed files yield an empty store."""
        if not self._path.exists():
            return _empty_document()
        try:
            parsed = json.loads(self._path.read_text())
        except (OSError, ValueError):
            log.warning("Failed to parse %s, using empty store", self._path, exc_info=True)
            return _empty_document()
        if not isinstance(parsed, dict) or not isinstance(parsed.get("channels"), dict):
            log.warning("%s has invalid structure, using empty store", self._path)
            return _empty_document()
        _migrate(parsed)
        return parsed

    def save(self, document: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(document, indent=2) + "\n")
        tmp.replace(self._path)

    # ── Channel sessions ────────────────────────────────────────────────────

    def get_session(self, channel_id: str) -> dict[str, Any] | None:
        return self.load()["channels"].get(channel_id)

    def save_session(self, channel_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        document = self.load()
        existing = document["channels"].get(channel_id)
        if existing is None:
            existing = {**_default_session(), "message_map": {}}
        merged = _merge(existing, patch)
        # Threads and the message map are owned by their own operations.
        merged["message_map"] = existing.get("message_map", {})
        if "threads" in existing:
            merged["threads"] = existing["threads"]
        document["channels"][channel_id] = merged
        self.save(document)
        return merged

    def reset_session(self, channel_id: str) -> dict[str, Any] | None:
        """Clear the live session id, keeping it in previous_session_ids."""
        document = self.load()
        channel = document["channels"].get(channel_id)
        if channel is None:
            return None
        old = channel.get("session_id")
        previous = channel.setdefault("previous_session_ids", [])
        if old and old not in previous:
            previous.append(old)
        channel["session_id"] = None
        channel["last_active_at"] = now_ms()
        self.save(document)
        log.info("Reset session for %s (previous=%s)", channel_id, old)
        return channel

    def delete_session(self, channel_id: str) -> bool:
        document = self.load()
        if document["channels"].pop(channel_id, None) is None:
            return False
        self.save(document)
        return True

    # ── Thread sessions ─────────────────────────────────────────────────────

    def get_thread_session(self, channel_id: str, thread_key: str) -> dict[str, Any] | None:
        channel = self.load()["channels"].get(channel_id)
        if not channel or not channel.get("threads"):
            return None
        return channel["threads"].get(thread_key)

    def save_thread_session(
        self, channel_id: str, thread_key: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        document = self.load()
        channel = document["channels"].get(channel_id)
        if channel is None:
            # No main session yet: create a minimal one to hang the thread on.
            channel = {**_default_session(), "message_map": {}, "threads": {}}
            document["channels"][channel_id] = channel
        threads = channel.setdefault("threads", {})
        existing = threads.get(thread_key)
        if existing is None:
            now = now_ms()
            existing = {
                "session_id": None,
                "forked_from": None,
                "working_dir": channel.get("working_dir"),
                "mode": channel.get("mode", "default"),
                "created_at": now,
                "last_active_at": now,
                "previous_session_ids": [],
                **{key: channel.get(key) for key in PATH_CONFIG_FIELDS},
            }
        threads[thread_key] = _merge(existing, patch)
        self.save(document)
        return threads[thread_key]

    # ── Message map ─────────────────────────────────────────────────────────

    def record_message(self, channel_id: str, surface_ts: str, entry: dict[str, Any]) -> bool:
        """Append a mapping entry. Returns False if *surface_ts* is already mapped."""
        document = self.load()
        channel = document["channels"].get(channel_id)
        if channel is None:
            channel = {**_default_session(), "message_map": {}}
            document["channels"][channel_id] = channel
        message_map = channel.setdefault("message_map", {})
        if surface_ts in message_map:
            log.debug("Mapping for %s/%s already recorded, keeping original", channel_id, surface_ts)
            return False
        message_map[surface_ts] = {k: v for k, v in entry.items() if v is not None}
        self.save(document)
        return True

    def backfill_permalink(self, channel_id: str, surface_ts: str, permalink: str) -> None:
        document = self.load()
        channel = document["channels"].get(channel_id)
        entry = (channel or {}).get("message_map", {}).get(surface_ts)
        if entry is None or entry.get("permalink"):
            return
        entry["permalink"] = permalink
        self.save(document)

    def get_message_map(self, channel_id: str) -> dict[str, dict[str, Any]]:
        channel = self.load()["channels"].get(channel_id)
        return dict((channel or {}).get("message_map", {}))

    def get_synced_message_ids(self, channel_id: str) -> set[str]:
        """Transcript ids that already have a mapping entry in this channel."""
        return {
            entry["sdk_message_id"]
            for entry in self.get_message_map(channel_id).values()
            if entry.get("sdk_message_id")
        }

"""Generic utilities and configuration for branchsync."""

from __future__ import annotations

import os
import time
from datetime import datetime
from pathlib import Path

# Configuration Constants
BRANCHSYNC_HOME = Path(os.environ.get("BRANCHSYNC_HOME", Path.home() / ".branchsync"))
STORE_PATH = Path(os.environ.get("BRANCHSYNC_STORE_PATH", BRANCHSYNC_HOME / "sessions.json"))
ACTIVITY_DB_PATH = Path(os.environ.get("BRANCHSYNC_ACTIVITY_DB", BRANCHSYNC_HOME / "activity.db"))

HISTORY_PATH = Path(os.environ.get("CLAUDE_PROJECTS_DIR", Path.home() / ".claude" / "projects"))
PERMALINK_BASE = os.environ.get("BRANCHSYNC_PERMALINK_BASE", "https://slack.com/archives").rstrip("/")

DEFAULT_UPDATE_RATE_SECONDS = 2
DEFAULT_THREAD_CHAR_LIMIT = 500
MIN_UPDATE_RATE_SECONDS = 1
MAX_UPDATE_RATE_SECONDS = 10
MIN_THREAD_CHAR_LIMIT = 100
MAX_THREAD_CHAR_LIMIT = 36000

THINKING_PREVIEW_LENGTH = 500
ACTIVITY_RETENTION = 500

PERMISSION_MODES = ("plan", "default", "bypassPermissions", "acceptEdits")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def conversation_key(channel_id: str, thread_ts: str | None = None) -> str:
    """Key for a watched conversation: the channel, or channel_thread."""
    return f"{channel_id}_{thread_ts}" if thread_ts else channel_id


def permalink_fallback(channel_id: str, ts: str) -> str:
    """Deterministic permalink used when the surface cannot provide one."""
    return f"{PERMALINK_BASE}/{channel_id}/p{ts.replace('.', '')}"


def ts_sort_key(ts: str) -> float | None:
    """Numeric ordering value of a surface timestamp, or None for synthetic keys."""
    try:
        return float(ts)
    except (TypeError, ValueError):
        return None


def clamp_update_rate(seconds: float) -> float:
    return max(MIN_UPDATE_RATE_SECONDS, min(MAX_UPDATE_RATE_SECONDS, seconds))


def clamp_char_limit(limit: int) -> int:
    return max(MIN_THREAD_CHAR_LIMIT, min(MAX_THREAD_CHAR_LIMIT, limit))


def parse_timestamp_ms(value: str | None) -> int:
    """Epoch milliseconds of an ISO-8601 transcript timestamp; now if unparseable."""
    if not value:
        return now_ms()
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return now_ms()

"""FastAPI server for branchsync: sessions, forks and transcript watches."""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, Query

from branchsync.activity_log import ActivityLog
from branchsync.lineage import find_fork_point, get_or_create_thread_session
from branchsync.session_store import SessionStore
from branchsync.surface import MemorySurface
from branchsync.utils import (
    MAX_THREAD_CHAR_LIMIT,
    MAX_UPDATE_RATE_SECONDS,
    MIN_THREAD_CHAR_LIMIT,
    MIN_UPDATE_RATE_SECONDS,
    PERMISSION_MODES,
    conversation_key,
)
from branchsync.watcher import WatchScheduler

log = logging.getLogger(__name__)

SESSION_FIELDS = (
    "session_id",
    "working_dir",
    "mode",
    "update_rate_seconds",
    "thread_char_limit",
    "path_configured",
    "configured_path",
    "configured_by",
    "configured_at",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Stop every watch and close the activity log on shutdown."""
    yield

    stopped = scheduler.stop_all()
    if stopped:
        log.info("Stopped %d watches on shutdown", stopped)
    await activity_log.close()


app = FastAPI(title="branchsync", lifespan=lifespan)
store = SessionStore()
activity_log = ActivityLog()
scheduler = WatchScheduler(store, activity_log)

# One in-process surface per channel; a chat platform adapter would replace these.
_surfaces: dict[str, MemorySurface] = {}


def _surface_for(channel_id: str) -> MemorySurface:
    if channel_id not in _surfaces:
        _surfaces[channel_id] = MemorySurface(channel_id)
    return _surfaces[channel_id]


def _validate_session_patch(patch: dict) -> str | None:
    mode = patch.get("mode")
    if mode is not None and mode not in PERMISSION_MODES:
        return f"mode must be one of {', '.join(PERMISSION_MODES)}"
    rate = patch.get("update_rate_seconds")
    if rate is not None:
        if not isinstance(rate, (int, float)) or not MIN_UPDATE_RATE_SECONDS <= rate <= MAX_UPDATE_RATE_SECONDS:
            return f"update_rate_seconds must be between {MIN_UPDATE_RATE_SECONDS} and {MAX_UPDATE_RATE_SECONDS}"
    limit = patch.get("thread_char_limit")
    if limit is not None:
        if not isinstance(limit, int) or not MIN_THREAD_CHAR_LIMIT <= limit <= MAX_THREAD_CHAR_LIMIT:
            return f"thread_char_limit must be between {MIN_THREAD_CHAR_LIMIT} and {MAX_THREAD_CHAR_LIMIT}"
    return None


# ── Sessions ────────────────────────────────────────────────────────────────


@app.get("/api/channels/{channel_id}/session")
async def get_session(channel_id: str, thread_ts: str | None = None):
    if thread_ts:
        session = store.get_thread_session(channel_id, thread_ts)
    else:
        session = store.get_session(channel_id)
    if session is None:
        return {"error": f"No session for '{conversation_key(channel_id, thread_ts)}'"}
    return {"channel_id": channel_id, "thread_ts": thread_ts, "session": session}


@app.put("/api/channels/{channel_id}/session")
async def save_session(channel_id: str, body: dict):
    """Merge-patch the channel (or, with thread_ts, thread) session."""
    thread_ts = body.get("thread_ts") or None
    patch = {k: v for k, v in body.items() if k in SESSION_FIELDS}
    if not patch:
        return {"error": f"Nothing to update; accepted fields: {', '.join(SESSION_FIELDS)}"}
    error = _validate_session_patch(patch)
    if error:
        return {"error": error}
    if thread_ts:
        session = store.save_thread_session(channel_id, thread_ts, patch)
    else:
        session = store.save_session(channel_id, patch)
    return {"ok": True, "session": session}


@app.post("/api/channels/{channel_id}/reset")
async def reset_session(channel_id: str):
    """Clear the live session id. History and forks keep resolving to the old one."""
    session = store.reset_session(channel_id)
    if session is None:
        return {"error": f"No session for '{channel_id}'"}
    scheduler.on_session_reset(channel_id)
    return {"ok": True, "previous_session_ids": session["previous_session_ids"]}


# ── Message map and forks ───────────────────────────────────────────────────


@app.get("/api/channels/{channel_id}/messages")
async def get_messages(channel_id: str):
    return {"channel_id": channel_id, "message_map": store.get_message_map(channel_id)}


@app.get("/api/channels/{channel_id}/fork-point")
async def get_fork_point(channel_id: str, ts: str = Query(...)):
    fork_point = find_fork_point(store, channel_id, ts)
    return {"channel_id": channel_id, "ts": ts, "fork_point": asdict(fork_point) if fork_point else None}


@app.post("/api/channels/{channel_id}/fork")
async def create_fork(channel_id: str, body: dict):
    """Get or create the thread session branching from anchor_ts."""
    anchor_ts = body.get("anchor_ts")
    if anchor_ts is not None and not isinstance(anchor_ts, str):
        return {"error": "anchor_ts must be a string"}
    anchor_ts = (anchor_ts or "").strip()
    if not anchor_ts:
        return {"error": "anchor_ts is required"}
    thread_key = body.get("thread_key") or anchor_ts
    parent_thread_ts = body.get("parent_thread_ts") or None

    fork_point = find_fork_point(store, channel_id, anchor_ts)
    result = get_or_create_thread_session(store, channel_id, thread_key, fork_point, parent_thread_ts)
    return {
        "ok": True,
        "thread_key": thread_key,
        "is_new_fork": result.is_new_fork,
        "fork_point": asdict(fork_point) if fork_point else None,
        "session": result.session,
    }


# ── Watches ─────────────────────────────────────────────────────────────────


@app.post("/api/channels/{channel_id}/watch")
async def start_watch(channel_id: str, body: dict | None = None):
    thread_ts = (body or {}).get("thread_ts") or None
    error = await scheduler.start_watching(channel_id, _surface_for(channel_id), thread_ts)
    if error:
        return {"error": error}
    return {"ok": True, "watch": scheduler.get_watcher(channel_id, thread_ts).to_dict()}


@app.post("/api/channels/{channel_id}/watch/stop")
async def stop_watch(channel_id: str, body: dict | None = None):
    thread_ts = (body or {}).get("thread_ts") or None
    if not scheduler.stop_watching(channel_id, thread_ts):
        return {"error": f"Not watching '{conversation_key(channel_id, thread_ts)}'"}
    return {"ok": True}


@app.put("/api/channels/{channel_id}/update-rate")
async def set_update_rate(channel_id: str, body: dict):
    """Persist a new update rate and apply it to a running watch."""
    thread_ts = body.get("thread_ts") or None
    seconds = body.get("seconds")
    error = _validate_session_patch({"update_rate_seconds": seconds}) if seconds is not None else "seconds is required"
    if error:
        return {"error": error}
    if thread_ts:
        store.save_thread_session(channel_id, thread_ts, {"update_rate_seconds": seconds})
    else:
        store.save_session(channel_id, {"update_rate_seconds": seconds})
    applied = scheduler.update_watch_rate(channel_id, thread_ts, seconds) is None
    return {"ok": True, "update_rate_seconds": seconds, "applied_to_watch": applied}


@app.get("/api/watches")
async def list_watches():
    return {"watches": [state.to_dict() for state in scheduler.watches]}


# ── Activity and surface ────────────────────────────────────────────────────


@app.get("/api/activity/{activity_key}")
async def get_activity(activity_key: str):
    entries = await activity_log.get(activity_key)
    if not entries:
        return {"error": f"No activity for '{activity_key}'"}
    return {"activity_key": activity_key, "entries": entries}


@app.get("/api/channels/{channel_id}/activity")
async def list_activity(channel_id: str, thread_ts: str | None = None, limit: int = Query(50, ge=1, le=500)):
    key = conversation_key(channel_id, thread_ts)
    return {"conversation_key": key, "entries": await activity_log.list_for_conversation(key, limit)}


@app.get("/api/channels/{channel_id}/surface")
async def get_surface(channel_id: str):
    surface = _surfaces.get(channel_id)
    if surface is None:
        return {"channel_id": channel_id, "messages": [], "history": []}
    return {
        "channel_id": channel_id,
        "messages": surface.visible(),
        "history": [{"op": op, "ts": ts, "content": content} for op, ts, content in surface.history],
    }


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="branchsync server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8430, help="Port to bind to (default: 8430)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "branchsync.web_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()

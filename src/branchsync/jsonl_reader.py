"""Offset-based incremental reader for append-only agent transcripts (JSONL)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from branchsync.utils import HISTORY_PATH

log = logging.getLogger(__name__)

SYNCED_TYPES = ("user", "assistant")
TOOL_RESULT_PREVIEW = 300


@dataclass
class TranscriptRecord:
    """One user/assistant line of a transcript, with the byte range it occupies."""

    uuid: str
    type: str
    content: str | list[dict[str, Any]]
    timestamp: str = ""
    session_id: str | None = None
    start_offset: int = 0
    end_offset: int = 0
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def _encode_dir(directory: str) -> str:
    """Encode a working directory path to the Claude projects folder name."""
    return directory.replace("/", "-")


def transcript_path(session_id: str, working_dir: str) -> Path:
    return HISTORY_PATH / _encode_dir(working_dir) / f"{session_id}.jsonl"


def transcript_exists(session_id: str, working_dir: str) -> bool:
    return transcript_path(session_id, working_dir).exists()


def get_file_size(path: str | Path) -> int:
    """Current size of *path*, 0 if it does not exist."""
    try:
        return Path(path).stat().st_size
    except OSError:
        return 0


def _to_record(entry: Any, start: int, end: int) -> TranscriptRecord | None:
    if not isinstance(entry, dict) or entry.get("type") not in SYNCED_TYPES:
        return None
    message = entry.get("message")
    if not isinstance(message, dict) or not message.get("content"):
        return None
    return TranscriptRecord(
        uuid=entry.get("uuid", ""),
        type=entry["type"],
        content=message["content"],
        timestamp=entry.get("timestamp", ""),
        session_id=entry.get("sessionId"),
        start_offset=start,
        end_offset=end,
        raw=entry,
    )


def read_new(file_path: str | Path, from_offset: int) -> tuple[list[TranscriptRecord], int]:
    """Read records appended since *from_offset*.

    Returns (records, new_offset). Only newline-terminated lines that parse are
    consumed. The first line of a read may be the tail of a record the previous
    offset landed inside of; it is skipped but its bytes are consumed. Any later
    line that fails to parse is still being written: stop before it so the next
    read starts there.
    """
    path = Path(file_path)
    size = get_file_size(path)
    if size <= from_offset:
        return [], from_offset

    try:
        with open(path, "rb") as f:
            f.seek(from_offset)
            data = f.read(size - from_offset)
    except OSError:
        log.warning("Could not read transcript %s", path, exc_info=True)
        return [], from_offset

    records: list[TranscriptRecord] = []
    pos = from_offset
    first = True
    # The piece after the last newline is unterminated and never consumed.
    for raw_line in data.split(b"\n")[:-1]:
        length = len(raw_line) + 1
        if not raw_line.strip():
            pos += length
            continue
        try:
            entry = json.loads(raw_line)
        except ValueError:
            if first:
                log.debug("Skipping partial first line at offset %d in %s", pos, path)
                pos += length
                first = False
                continue
            break
        first = False
        record = _to_record(entry, pos, pos + length)
        pos += length
        if record is not None:
            records.append(record)

    return records, pos


# ── Content extraction ──────────────────────────────────────────────────────


def _blocks(record: TranscriptRecord) -> list[dict[str, Any]]:
    if isinstance(record.content, list):
        return [b for b in record.content if isinstance(b, dict)]
    return []


def extract_text_content(record: TranscriptRecord) -> str:
    """Renderable text of a record: the string payload, or its text blocks joined."""
    if isinstance(record.content, str):
        return record.content
    return "\n".join(b.get("text", "") for b in _blocks(record) if b.get("type") == "text" and b.get("text"))


def _result_text(content: Any) -> str:
    if isinstance(content, list):
        return "\n".join(p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text")
    return content if isinstance(content, str) else ""


def extract_tool_results(record: TranscriptRecord) -> list[tuple[str, str, bool]]:
    """(tool_use_id, output text, is_error) for each tool_result block of a user record."""
    if record.type != "user":
        return []
    return [
        (b.get("tool_use_id", ""), _result_text(b.get("content", "")), bool(b.get("is_error", False)))
        for b in _blocks(record)
        if b.get("type") == "tool_result"
    ]


def summarize_tool_input(name: str, inp: dict[str, Any] | None) -> str:
    """Compact summary of tool input for display."""
    if not inp:
        return ""
    # file_path wins over path when a tool carries both.
    if inp.get("file_path"):
        return inp["file_path"]
    if name == "NotebookEdit":
        return inp.get("notebook_path", "")
    if name == "Bash":
        cmd = inp.get("command", "")
        return cmd[:120] + ("..." if len(cmd) > 120 else "")
    if name in ("Grep", "Glob"):
        pattern = inp.get("pattern", "")
        path = inp.get("path", "")
        return f"{pattern}" + (f" in {path}" if path else "")
    if inp.get("path"):
        return inp["path"]
    if name in ("Agent", "Task"):
        return inp.get("description", inp.get("prompt", ""))[:120]
    if name == "WebSearch":
        return inp.get("query", "")
    if name == "WebFetch":
        return inp.get("url", "")
    # Fallback: first string value
    for k, v in inp.items():
        if isinstance(v, str) and v and not k.startswith("_"):
            return v[:100]
    return ""

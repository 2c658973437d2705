"""Surface text for mirrored transcript content: truncation, splitting and activity lines."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable

from branchsync.jsonl_reader import summarize_tool_input

if TYPE_CHECKING:
    from branchsync.activity import ActivityEntry

USER_PREFIX = ":inbox_tray: *Terminal Input*\n"
RESPONSE_PREFIX = ":outbox_tray: *Terminal Output*\n"
TRUNCATED_SUFFIX = "\n\n_...truncated. Full response attached._"

_INLINE_CODE_RE = re.compile(r"(?<!`)`(?!`)")
_BOLD_RE = re.compile(r"(?<!\*)\*(?!\*)")
_ITALIC_RE = re.compile(r"(?<!_)_(?!_)")


def _truncate_text(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len - 3] + "..."


def _truncate_path(path: str, max_len: int) -> str:
    if len(path) <= max_len:
        return path
    parts = path.split("/")
    if len(parts) <= 2:
        return path[-max_len:]
    last_two = "/".join(parts[-2:])
    return last_two if len(last_two) <= max_len else "..." + path[-(max_len - 3):]


def truncate_with_closed_formatting(text: str, limit: int) -> str:
    """Cut *text* to fit *limit*, closing any formatting left open by the cut."""
    if len(text) <= limit:
        return text

    # 10 chars of slack for the closing markers
    max_content = max(limit - len(TRUNCATED_SUFFIX) - 10, 1)
    truncated = text[:max_content]

    min_break = int(max_content * 0.8)
    last_newline = truncated.rfind("\n")
    last_space = truncated.rfind(" ")
    break_point = max(
        last_newline if last_newline > min_break else -1,
        last_space if last_space > min_break else -1,
        min_break,
    )
    truncated = truncated[:break_point]

    inside_code_block = truncated.count("```") % 2 == 1
    if inside_code_block:
        truncated += "\n```"
    else:
        # Inside a code block these characters are literal.
        if len(_INLINE_CODE_RE.findall(truncated)) % 2 == 1:
            truncated += "`"
        if len(_BOLD_RE.findall(truncated)) % 2 == 1:
            truncated += "*"
        if len(_ITALIC_RE.findall(truncated)) % 2 == 1:
            truncated += "_"
        if truncated.count("~") % 2 == 1:
            truncated += "~"

    return truncated + TRUNCATED_SUFFIX


def split_for_surface(text: str, limit: int) -> list[str]:
    """Split *text* into parts of at most *limit* chars.

    Breaks on a newline (or a space) where possible. A code fence that spans a
    break is closed at the end of one part and reopened at the start of the next.
    """
    limit = max(limit, 20)
    parts: list[str] = []
    reopen = ""
    remaining = text
    while remaining:
        chunk = reopen + remaining
        if len(chunk) <= limit:
            parts.append(chunk)
            break
        window = chunk[:limit - 4]
        cut = window.rfind("\n")
        if cut < len(window) // 2:
            cut = window.rfind(" ")
        if cut <= len(reopen):
            cut = len(window)
        part = chunk[:cut]
        rest = chunk[cut:]
        if rest[:1] in ("\n", " "):
            rest = rest[1:]
        if part.count("```") % 2 == 1:
            part += "\n```"
            reopen = "```\n"
        else:
            reopen = ""
        parts.append(part)
        remaining = rest
    return parts


# ── Tools ───────────────────────────────────────────────────────────────────


def tool_display_name(name: str | None) -> str:
    """MCP-style names like "mcp__server__Read" display as "Read"."""
    if not name:
        return "Unknown"
    return name.split("__")[-1]


def tool_emoji(name: str | None) -> str:
    if not name:
        return ":gear:"
    lower = name.lower()
    if "read" in lower or "glob" in lower or "grep" in lower:
        return ":mag:"
    if "edit" in lower or "write" in lower:
        return ":memo:"
    if "bash" in lower or "shell" in lower:
        return ":computer:"
    if "web" in lower or "fetch" in lower:
        return ":globe_with_meridians:"
    if "task" in lower or "agent" in lower:
        return ":robot_face:"
    if "todo" in lower:
        return ":clipboard:"
    return ":gear:"


def _tool_input_summary(entry: ActivityEntry) -> str:
    name = tool_display_name(entry.tool)
    summary = summarize_tool_input(name, entry.tool_input)
    if not summary:
        return ""
    if "/" in summary and " " not in summary:
        summary = _truncate_path(summary, 40)
    else:
        summary = _truncate_text(summary, 40)
    return f" `{summary}`"


def format_tool_result_summary(entry: ActivityEntry) -> str:
    if entry.is_error:
        return " :warning: failed"
    if entry.line_count is not None:
        return f" ({entry.line_count} lines)"
    return ""


def _tool_line(entry: ActivityEntry) -> str:
    line = f"{tool_emoji(entry.tool)} *{tool_display_name(entry.tool)}*{_tool_input_summary(entry)}"
    if entry.type == "tool_start":
        return line + " [in progress]"
    line += format_tool_result_summary(entry)
    if entry.duration_ms is not None:
        line += f" [{entry.duration_ms / 1000:.1f}s]"
    return line


def format_activity_batch(entries: Iterable[ActivityEntry]) -> str:
    """One combined message for a batch of activity entries.

    Thinking and generating entries get their own messages and are skipped.
    """
    lines: list[str] = []
    for entry in entries:
        if entry.type == "starting":
            lines.append(":brain: *Analyzing request...*")
        elif entry.type in ("tool_start", "tool_complete"):
            lines.append(_tool_line(entry))
    return "\n".join(lines).strip()


def format_thinking_message(entry: ActivityEntry, char_limit: int, attached: bool = False) -> str:
    content = entry.thinking_content or ""
    duration = f" [{entry.duration_ms / 1000:.1f}s]" if entry.duration_ms else ""
    char_info = f" _{len(content):,} chars_" if content else ""

    if entry.thinking_in_progress:
        lines = [f":brain: *Thinking...*{duration}{char_info}"]
        if content:
            # Rolling tail while the block is still open
            lines.append(content[-char_limit:] if len(content) > char_limit else content)
        return "\n".join(lines)

    lines = [f":bulb: *Thinking*{duration}{char_info}"]
    if content:
        lines.append(content[:char_limit] + "..." if len(content) > char_limit else content)
    if attached:
        lines.append("_Full content attached._")
    return "\n".join(lines)


def format_user_message(text: str, char_limit: int) -> str:
    return USER_PREFIX + truncate_with_closed_formatting(text, char_limit)


def format_response_header(part: str, index: int, total: int) -> str:
    """Prefix for one part of an assistant response; later parts carry a (n/total) marker."""
    if index == 0:
        return RESPONSE_PREFIX + part
    return f"_({index + 1}/{total})_\n{part}"

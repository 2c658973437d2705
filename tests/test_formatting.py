"""Tests for surface text: truncation, splitting and activity lines."""

from branchsync.activity import ActivityEntry
from branchsync.formatting import (
    RESPONSE_PREFIX,
    TRUNCATED_SUFFIX,
    USER_PREFIX,
    format_activity_batch,
    format_response_header,
    format_thinking_message,
    format_user_message,
    split_for_surface,
    tool_display_name,
    tool_emoji,
    truncate_with_closed_formatting,
)


# ── Truncation ──────────────────────────────────────────────────────────────


def test_short_text_untouched():
    assert truncate_with_closed_formatting("hello *world*", 100) == "hello *world*"


def test_truncated_text_fits_and_has_suffix():
    text = "word " * 200
    out = truncate_with_closed_formatting(text, 300)
    assert len(out) <= 300
    assert out.endswith(TRUNCATED_SUFFIX)


def test_open_code_block_is_closed():
    text = "intro\n```python\n" + "x = 1\n" * 100 + "```\n"
    out = truncate_with_closed_formatting(text, 200)
    body = out[: -len(TRUNCATED_SUFFIX)]
    assert body.count("```") % 2 == 0
    assert body.endswith("```")


def test_open_bold_is_closed():
    text = "*" + "bold words " * 50 + "*"
    out = truncate_with_closed_formatting(text, 150)
    body = out[: -len(TRUNCATED_SUFFIX)]
    assert body.count("*") % 2 == 0


# ── Splitting ───────────────────────────────────────────────────────────────


def test_split_short_text_is_one_part():
    assert split_for_surface("hello", 100) == ["hello"]


def test_split_respects_limit_and_keeps_content():
    text = "\n".join(f"line {i}" for i in range(100))
    parts = split_for_surface(text, 120)
    assert len(parts) > 1
    assert all(len(p) <= 120 for p in parts)
    assert "line 0" in parts[0]
    assert "line 99" in parts[-1]


def test_split_reopens_code_fence():
    text = "```\n" + "\n".join(f"print({i})" for i in range(60)) + "\n```"
    parts = split_for_surface(text, 100)
    assert len(parts) > 1
    for part in parts:
        assert part.count("```") % 2 == 0
    assert parts[1].startswith("```\n")


# ── Tools ───────────────────────────────────────────────────────────────────


def test_tool_display_name_strips_mcp_prefix():
    assert tool_display_name("mcp__github__create_issue") == "create_issue"
    assert tool_display_name("Read") == "Read"
    assert tool_display_name(None) == "Unknown"


def test_tool_emoji():
    assert tool_emoji("Read") == ":mag:"
    assert tool_emoji("Edit") == ":memo:"
    assert tool_emoji("Bash") == ":computer:"
    assert tool_emoji("Mystery") == ":gear:"


def test_activity_batch_lines():
    entries = [
        ActivityEntry(timestamp=0, type="starting"),
        ActivityEntry(timestamp=0, type="tool_start", tool="Read", tool_input={"file_path": "/a/b.py"}, tool_use_id="t1"),
        ActivityEntry(timestamp=0, type="tool_complete", tool="Bash", tool_input={"command": "ls"}, line_count=3, duration_ms=1500),
        ActivityEntry(timestamp=0, type="tool_complete", tool="Bash", tool_input={"command": "false"}, is_error=True),
        ActivityEntry(timestamp=0, type="thinking", thinking_content="hidden"),
        ActivityEntry(timestamp=0, type="generating", generating_chars=10),
    ]
    lines = format_activity_batch(entries).split("\n")
    assert lines == [
        ":brain: *Analyzing request...*",
        ":mag: *Read* `/a/b.py` [in progress]",
        ":computer: *Bash* `ls` (3 lines) [1.5s]",
        ":computer: *Bash* `false` :warning: failed",
    ]


def test_activity_batch_empty():
    assert format_activity_batch([ActivityEntry(timestamp=0, type="generating")]) == ""


# ── Messages ────────────────────────────────────────────────────────────────


def test_thinking_in_progress_shows_tail():
    entry = ActivityEntry(timestamp=0, type="thinking", thinking_content="a" * 50 + "END", thinking_in_progress=True)
    out = format_thinking_message(entry, 10)
    assert out.startswith(":brain: *Thinking...*")
    assert out.endswith("aaaaaaaEND")


def test_thinking_finished_shows_head_and_attachment_note():
    entry = ActivityEntry(timestamp=0, type="thinking", thinking_content="START" + "a" * 50, duration_ms=2000)
    out = format_thinking_message(entry, 10, attached=True)
    assert out.startswith(":bulb: *Thinking* [2.0s]")
    assert "STARTaaaaa..." in out
    assert out.endswith("_Full content attached._")


def test_user_message_prefix():
    assert format_user_message("hi", 100) == USER_PREFIX + "hi"


def test_response_header():
    assert format_response_header("one", 0, 2) == RESPONSE_PREFIX + "one"
    assert format_response_header("two", 1, 2) == "_(2/2)_\ntwo"

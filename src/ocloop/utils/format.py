"""Display formatting helpers."""

import re
from typing import Any, Dict, Optional

_NEWLINES = re.compile(r"[\r\n]+")
_WHITESPACE = re.compile(r"\s+")
_PATH_SEPARATORS = re.compile(r"[/\\]")

DURATION_WIDTH = 7


def format_duration(ms: Optional[float]) -> str:
    """Render milliseconds as ``45s``, ``1m 23s`` or ``2h 15m``, right-aligned."""
    if ms is None or ms < 0:
        return "0s".rjust(DURATION_WIDTH)

    total_seconds = int(ms // 1000)
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60

    if hours > 0:
        text = f"{hours}h {minutes}m"
    elif minutes > 0:
        text = f"{minutes}m {seconds}s"
    else:
        text = f"{seconds}s"
    return text.rjust(DURATION_WIDTH)


def format_token_count(n: int) -> str:
    return f"{n:,}"


def truncate_text(text: str, max_len: int) -> str:
    """Collapse whitespace onto one line and cut to ``max_len`` with ``...``."""
    normalized = _WHITESPACE.sub(" ", _NEWLINES.sub(" ", text)).strip()
    if len(normalized) <= max_len:
        return normalized
    return normalized[: max(0, max_len - 3)] + "..."


def format_diff_summary(additions: int, deletions: int, files: int) -> str:
    return f"+{additions}/-{deletions} ({files})"


def _basename(path: str) -> str:
    return _PATH_SEPARATORS.split(path)[-1] or path


def get_tool_preview(tool_name: str, tool_input: Dict[str, Any]) -> str:
    """Short description of a tool call for the activity log."""
    if tool_name == "bash":
        return truncate_text(str(tool_input.get("command") or ""), 50)
    if tool_name in ("read", "write", "edit"):
        return _basename(str(tool_input.get("filePath") or ""))
    if tool_name in ("glob", "grep"):
        return str(tool_input.get("pattern") or "")
    if tool_name == "task":
        return str(tool_input.get("description") or "subtask")
    return tool_name

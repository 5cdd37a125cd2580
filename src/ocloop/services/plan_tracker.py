"""Plan progress tracking for PLAN.md style task lists.

Recognized task lines (leading whitespace ignored):

- ``- [x]`` / ``- [X]``: completed
- ``- [ ]``: pending
- ``- [MANUAL]`` or ``- [ ] [MANUAL]``: manual, excluded from automation
- ``- [BLOCKED: reason]`` or ``- [ ] [BLOCKED: reason]``: blocked

A ``<plan-complete>...</plan-complete>`` block declares the plan finished
regardless of checkbox counts.
"""

import logging
import re
from pathlib import Path
from typing import Optional, Union

from ocloop.constants import DEFAULT_COMPLETION_MESSAGE, PLAN_COMPLETE_TAG
from ocloop.models.plan import CompletionSummary, ParsedTask, PlanProgress, TaskType

logger = logging.getLogger(__name__)

COMPLETED_MARKER_PATTERN = re.compile(r"^[xX]$")
MANUAL_MARKER_PATTERN = re.compile(r"^MANUAL$", re.IGNORECASE)
MANUAL_TAG_PATTERN = re.compile(r"^\[MANUAL\]\s*", re.IGNORECASE)
BLOCKED_MARKER_PATTERN = re.compile(r"^BLOCKED[:\s]*", re.IGNORECASE)
BLOCKED_TAG_PATTERN = re.compile(r"^\[BLOCKED[:\s]*([^\]]*)\]\s*(.*)$", re.IGNORECASE)
PLAN_COMPLETE_PATTERN = re.compile(
    rf"<{PLAN_COMPLETE_TAG}>([\s\S]*?)</{PLAN_COMPLETE_TAG}>"
)

_NOT_A_TASK = ParsedTask(type=TaskType.NOT_A_TASK)


def parse_task_line(line: str) -> ParsedTask:
    """Classify one plan line."""
    trimmed = line.strip()
    if not trimmed.startswith("- ["):
        return _NOT_A_TASK

    close_bracket = trimmed.find("]", 3)
    if close_bracket == -1:
        return _NOT_A_TASK

    marker = trimmed[3:close_bracket].strip()
    rest = trimmed[close_bracket + 1 :].strip()

    if COMPLETED_MARKER_PATTERN.match(marker):
        return ParsedTask(type=TaskType.COMPLETED, description=rest)

    if MANUAL_MARKER_PATTERN.match(marker):
        return ParsedTask(type=TaskType.MANUAL, description=rest)

    if marker == "" and MANUAL_TAG_PATTERN.match(rest):
        return ParsedTask(type=TaskType.MANUAL, description=MANUAL_TAG_PATTERN.sub("", rest, count=1))

    if BLOCKED_MARKER_PATTERN.match(marker):
        reason = BLOCKED_MARKER_PATTERN.sub("", marker, count=1)
        return ParsedTask(type=TaskType.BLOCKED, description=rest, blocked_reason=reason)

    if marker == "":
        match = BLOCKED_TAG_PATTERN.match(rest)
        if match:
            return ParsedTask(
                type=TaskType.BLOCKED,
                description=match.group(2) or "",
                blocked_reason=match.group(1).strip(),
            )
        return ParsedTask(type=TaskType.PENDING, description=rest)

    # Unknown marker content
    return _NOT_A_TASK


def parse_plan(content: str) -> PlanProgress:
    """Count tasks in plan content."""
    total = completed = manual = blocked = 0

    for line in content.split("\n"):
        task = parse_task_line(line)
        if task.type is TaskType.NOT_A_TASK:
            continue
        total += 1
        if task.type is TaskType.COMPLETED:
            completed += 1
        elif task.type is TaskType.MANUAL:
            manual += 1
        elif task.type is TaskType.BLOCKED:
            blocked += 1

    pending = total - completed - manual - blocked
    denominator = total - manual
    # An empty or all-manual plan is complete by definition
    percent = _round_half_up(completed * 100 / denominator) if denominator > 0 else 100

    return PlanProgress(
        total=total,
        completed=completed,
        pending=pending,
        manual=manual,
        blocked=blocked,
        automatable=pending,
        percent_complete=percent,
    )


def _round_half_up(value: float) -> int:
    # half-up: 62.5 -> 63
    return int(value + 0.5)


def parse_plan_complete(content: str) -> Optional[str]:
    """Return the text inside the completion sentinel, or None if absent."""
    match = PLAN_COMPLETE_PATTERN.search(content)
    return match.group(1).strip() if match else None


def current_task_from_content(content: str) -> Optional[str]:
    """Description of the first pending task that has one."""
    for line in content.split("\n"):
        task = parse_task_line(line)
        if task.type is TaskType.PENDING and task.description:
            return task.description
    return None


def build_completion_summary(content: str, sentinel_text: Optional[str] = None) -> CompletionSummary:
    """Collect the tasks the loop could not finish on its own."""
    manual_tasks = []
    blocked_tasks = []
    for line in content.split("\n"):
        task = parse_task_line(line)
        if task.type is TaskType.MANUAL:
            manual_tasks.append(task.description)
        elif task.type is TaskType.BLOCKED:
            if task.blocked_reason:
                blocked_tasks.append(f"{task.description} ({task.blocked_reason})")
            else:
                blocked_tasks.append(task.description)

    return CompletionSummary(
        manual_tasks=manual_tasks,
        blocked_tasks=blocked_tasks,
        raw_content=sentinel_text or DEFAULT_COMPLETION_MESSAGE,
    )


class PlanTracker:
    """Reads a plan file fresh on every query."""

    def __init__(self, plan_path: Union[str, Path]):
        self.plan_path = Path(plan_path)

    def read(self) -> str:
        return self.plan_path.read_text(encoding="utf-8")

    def progress(self) -> PlanProgress:
        """Parse the plan file.

        Raises:
            OSError: If the plan file cannot be read
            UnicodeDecodeError: If the plan file is not valid UTF-8
        """
        return parse_plan(self.read())

    def is_complete(self) -> bool:
        return self.completion_text() is not None

    def completion_text(self) -> Optional[str]:
        try:
            content = self.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Plan completion check skipped: {e}")
            return None
        return parse_plan_complete(content)

    def completion_summary(self) -> Optional[CompletionSummary]:
        """Summary for a plan carrying the completion sentinel, else None."""
        try:
            content = self.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Plan completion check skipped: {e}")
            return None
        sentinel = parse_plan_complete(content)
        if sentinel is None:
            return None
        return build_completion_summary(content, sentinel)

    def current_task(self) -> Optional[str]:
        try:
            return current_task_from_content(self.read())
        except (OSError, UnicodeDecodeError):
            return None

    def is_plan_file(self, path: Union[str, Path]) -> bool:
        """True if ``path`` resolves to the tracked plan file."""
        return Path(path).resolve() == self.plan_path.resolve()

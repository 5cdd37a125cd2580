"""Token and diff totals for the current session."""

from typing import Iterable

from pydantic import BaseModel

from ocloop.constants import LOG_FILE
from ocloop.models.events import FileDiff, TokenUsage


class DiffSummary(BaseModel):
    additions: int = 0
    deletions: int = 0
    files: int = 0


class SessionStats:
    def __init__(self):
        self.tokens = TokenUsage()
        self.diff = DiffSummary()

    @property
    def total_tokens(self) -> int:
        return self.tokens.input + self.tokens.output + self.tokens.reasoning

    def add_tokens(self, tokens: TokenUsage) -> None:
        self.tokens = TokenUsage(
            input=self.tokens.input + tokens.input,
            output=self.tokens.output + tokens.output,
            reasoning=self.tokens.reasoning + tokens.reasoning,
            cache_read=self.tokens.cache_read + tokens.cache_read,
            cache_write=self.tokens.cache_write + tokens.cache_write,
        )

    def set_diff(self, diffs: Iterable[FileDiff]) -> None:
        """Replace the diff summary. The harness log file is not counted."""
        counted = [d for d in diffs if not d.file.endswith(LOG_FILE)]
        self.diff = DiffSummary(
            additions=sum(d.additions for d in counted),
            deletions=sum(d.deletions for d in counted),
            files=len(counted),
        )

    def reset(self) -> None:
        self.tokens = TokenUsage()
        self.diff = DiffSummary()

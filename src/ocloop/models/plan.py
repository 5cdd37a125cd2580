"""Plan document models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskType(str, Enum):
    """Classification of a single plan line."""

    COMPLETED = "completed"
    PENDING = "pending"
    MANUAL = "manual"
    BLOCKED = "blocked"
    NOT_A_TASK = "not-a-task"


class ParsedTask(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: TaskType
    description: str = ""
    blocked_reason: Optional[str] = None


class PlanProgress(BaseModel):
    """Task counts derived from a plan document."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    completed: int = 0
    pending: int = 0
    manual: int = 0
    blocked: int = 0
    # pending tasks are the ones the loop can still work on
    automatable: int = 0
    percent_complete: int = 100


class CompletionSummary(BaseModel):
    """Remaining work reported when the plan is declared complete."""

    model_config = ConfigDict(frozen=True)

    manual_tasks: List[str] = Field(default_factory=list)
    blocked_tasks: List[str] = Field(default_factory=list)
    raw_content: Optional[str] = None

"""Activity log models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ActivityEventType(str, Enum):
    SESSION_START = "session_start"
    SESSION_IDLE = "session_idle"
    TASK = "task"
    FILE_EDIT = "file_edit"
    ERROR = "error"
    TOOL_USE = "tool_use"
    FILE_READ = "file_read"


class ActivityEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    timestamp: datetime
    type: ActivityEventType
    message: str
    dimmed: bool = False
    detail: Optional[str] = None

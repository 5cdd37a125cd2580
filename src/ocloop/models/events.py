"""Remote events received from the opencode event feed."""

from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class StreamStatus(str, Enum):
    """Connection status of the event stream subscription."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Todo(BaseModel):
    id: str = ""
    content: str = ""
    status: str = "pending"
    priority: str = "medium"


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0


class FileDiff(BaseModel):
    file: str
    additions: int = 0
    deletions: int = 0


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Session-scoped events are dropped when they belong to another session
    session_scoped: ClassVar[bool] = True


class SessionCreated(_Event):
    kind: Literal["session_created"] = "session_created"
    session_id: str


class SessionIdleEvent(_Event):
    kind: Literal["session_idle"] = "session_idle"
    session_id: str


class SessionErrorEvent(_Event):
    kind: Literal["session_error"] = "session_error"
    session_id: Optional[str] = None
    message: str = "Unknown error"
    aborted: bool = False


class TodoUpdated(_Event):
    kind: Literal["todo_updated"] = "todo_updated"
    session_id: str
    todos: List[Todo] = Field(default_factory=list)


class FileEdited(_Event):
    kind: Literal["file_edited"] = "file_edited"
    session_scoped: ClassVar[bool] = False
    path: str


class SessionStatusChanged(_Event):
    kind: Literal["session_status"] = "session_status"
    session_id: str
    status: str


class StepFinished(_Event):
    kind: Literal["step_finished"] = "step_finished"
    session_id: str
    tokens: TokenUsage = Field(default_factory=TokenUsage)


class SessionDiff(_Event):
    kind: Literal["session_diff"] = "session_diff"
    session_id: str
    diffs: List[FileDiff] = Field(default_factory=list)


class ToolUsed(_Event):
    kind: Literal["tool_used"] = "tool_used"
    session_id: str
    tool: str
    input: Dict[str, Any] = Field(default_factory=dict)


RemoteEvent = Annotated[
    Union[
        SessionCreated,
        SessionIdleEvent,
        SessionErrorEvent,
        TodoUpdated,
        FileEdited,
        SessionStatusChanged,
        StepFinished,
        SessionDiff,
        ToolUsed,
    ],
    Field(discriminator="kind"),
]

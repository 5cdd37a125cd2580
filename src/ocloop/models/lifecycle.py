"""Lifecycle states and actions for the harness state machine."""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from ocloop.models.plan import CompletionSummary


class ErrorSource(str, Enum):
    """Component that raised a harness-level error."""

    SERVER = "server"
    SSE = "sse"
    PTY = "pty"
    API = "api"
    PLAN = "plan"


class InteractionMode(str, Enum):
    """Whether operator keystrokes are forwarded to the attached session."""

    ATTACHED = "attached"
    DETACHED = "detached"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# =============================================================================
# States
# =============================================================================


class Starting(_Frozen):
    type: Literal["starting"] = "starting"


class Ready(_Frozen):
    """Server is up; waiting for the operator to start iterating."""

    type: Literal["ready"] = "ready"


class Running(_Frozen):
    """Iterating. An empty session_id means between iterations."""

    type: Literal["running"] = "running"
    iteration: int
    session_id: str = ""


class Pausing(_Frozen):
    """Pause requested; completes when the in-flight session goes idle."""

    type: Literal["pausing"] = "pausing"
    iteration: int
    session_id: str


class Paused(_Frozen):
    type: Literal["paused"] = "paused"
    iteration: int


class Stopping(_Frozen):
    type: Literal["stopping"] = "stopping"


class Stopped(_Frozen):
    type: Literal["stopped"] = "stopped"


class Complete(_Frozen):
    type: Literal["complete"] = "complete"
    iterations: int
    summary: CompletionSummary


class Error(_Frozen):
    type: Literal["error"] = "error"
    source: ErrorSource
    message: str
    recoverable: bool


class Debug(_Frozen):
    """Sandbox mode: sessions are created manually, no prompt is sent."""

    type: Literal["debug"] = "debug"
    session_id: str = ""


LifecycleState = Annotated[
    Union[Starting, Ready, Running, Pausing, Paused, Stopping, Stopped, Complete, Error, Debug],
    Field(discriminator="type"),
]


# =============================================================================
# Actions
# =============================================================================


class ServerReady(_Frozen):
    type: Literal["server_ready"] = "server_ready"


class ServerReadyDebug(_Frozen):
    type: Literal["server_ready_debug"] = "server_ready_debug"


class Start(_Frozen):
    type: Literal["start"] = "start"


class TogglePause(_Frozen):
    type: Literal["toggle_pause"] = "toggle_pause"


class Quit(_Frozen):
    type: Literal["quit"] = "quit"


class SessionIdle(_Frozen):
    type: Literal["session_idle"] = "session_idle"


class IterationStarted(_Frozen):
    type: Literal["iteration_started"] = "iteration_started"
    session_id: str


class NewSession(_Frozen):
    type: Literal["new_session"] = "new_session"
    session_id: str


class PlanComplete(_Frozen):
    type: Literal["plan_complete"] = "plan_complete"
    summary: CompletionSummary


class ErrorOccurred(_Frozen):
    type: Literal["error"] = "error"
    source: ErrorSource
    message: str
    recoverable: bool


class Retry(_Frozen):
    type: Literal["retry"] = "retry"


class ShutdownComplete(_Frozen):
    type: Literal["stopped"] = "stopped"


LifecycleAction = Annotated[
    Union[
        ServerReady,
        ServerReadyDebug,
        Start,
        TogglePause,
        Quit,
        SessionIdle,
        IterationStarted,
        NewSession,
        PlanComplete,
        ErrorOccurred,
        Retry,
        ShutdownComplete,
    ],
    Field(discriminator="type"),
]

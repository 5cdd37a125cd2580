"""Attached session channel models."""

from enum import Enum


class ChannelStatus(str, Enum):
    """Lifecycle of the attached pseudo-terminal process."""

    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    EXITED = "exited"
    ERROR = "error"

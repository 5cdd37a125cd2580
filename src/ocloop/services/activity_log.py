"""Bounded log of recent harness activity."""

from collections import deque
from datetime import datetime
from typing import Deque, List, Optional

from ocloop.constants import ACTIVITY_LOG_MAX_EVENTS
from ocloop.models.activity import ActivityEvent, ActivityEventType


class ActivityLog:
    """Keeps the most recent events; the oldest are dropped first."""

    def __init__(self, max_events: int = ACTIVITY_LOG_MAX_EVENTS):
        self._events: Deque[ActivityEvent] = deque(maxlen=max_events)
        self._next_id = 1

    def add(
        self,
        type: ActivityEventType,
        message: str,
        dimmed: bool = False,
        detail: Optional[str] = None,
    ) -> ActivityEvent:
        event = ActivityEvent(
            id=self._next_id,
            timestamp=datetime.now(),
            type=type,
            message=message,
            dimmed=dimmed,
            detail=detail,
        )
        self._next_id += 1
        self._events.append(event)
        return event

    @property
    def events(self) -> List[ActivityEvent]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)

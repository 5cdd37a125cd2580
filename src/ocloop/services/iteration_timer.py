"""Pause-aware timing of harness iterations."""

import time
from typing import Callable, List, Optional


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class IterationTimer:
    """Tracks active (unpaused) wall-clock time per iteration.

    All durations are in milliseconds. ``clock`` is injectable so tests can
    drive time explicitly.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or _monotonic_ms
        self.iteration_start_time: Optional[float] = None
        self.pause_start_time: Optional[float] = None
        self.accumulated_pause_time: float = 0.0
        self._history: List[float] = []

    @property
    def history(self) -> List[float]:
        """Active durations of completed iterations, oldest first."""
        return list(self._history)

    @property
    def is_paused(self) -> bool:
        return self.pause_start_time is not None

    def start_iteration(self) -> None:
        self.iteration_start_time = self._clock()
        self.pause_start_time = None
        self.accumulated_pause_time = 0.0

    def pause(self) -> None:
        if self.pause_start_time is not None:
            return
        self.pause_start_time = self._clock()

    def resume(self) -> None:
        if self.pause_start_time is None:
            return
        self.accumulated_pause_time += self._clock() - self.pause_start_time
        self.pause_start_time = None

    def _active_time(self, now: float) -> float:
        if self.iteration_start_time is None:
            return 0.0
        pause_time = self.accumulated_pause_time
        if self.pause_start_time is not None:
            pause_time += now - self.pause_start_time
        return max(0.0, now - self.iteration_start_time - pause_time)

    def elapsed(self) -> float:
        """Active time of the current iteration so far."""
        return self._active_time(self._clock())

    def end_iteration(self) -> float:
        """Close the current iteration and record its active duration.

        Returns 0 without recording anything if no iteration was started.
        """
        if self.iteration_start_time is None:
            return 0.0

        active = self._active_time(self._clock())
        self._history.append(active)
        self.iteration_start_time = None
        self.pause_start_time = None
        self.accumulated_pause_time = 0.0
        return active

    def average_time(self) -> Optional[float]:
        if not self._history:
            return None
        return sum(self._history) / len(self._history)

    def total_active_time(self) -> float:
        return sum(self._history) + self.elapsed()

    def estimated_total(self, remaining: int) -> Optional[float]:
        """Estimated time for ``remaining`` more iterations."""
        average = self.average_time()
        if average is None or remaining <= 0:
            return None
        return average * remaining

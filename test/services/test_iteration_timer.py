"""Tests for the pause-aware iteration timer."""

import pytest

from ocloop.services.iteration_timer import IterationTimer


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def timer(clock):
    return IterationTimer(clock=clock)


class TestIterationTimer:
    def test_elapsed_before_start_is_zero(self, timer):
        assert timer.elapsed() == 0

    def test_elapsed_counts_active_time(self, timer, clock):
        timer.start_iteration()
        clock.advance(1500)
        assert timer.elapsed() == 1500

    def test_pause_excludes_time(self, timer, clock):
        timer.start_iteration()
        clock.advance(1000)
        timer.pause()
        clock.advance(5000)
        assert timer.elapsed() == 1000
        timer.resume()
        clock.advance(500)
        assert timer.elapsed() == 1500

    def test_double_pause_keeps_first_start(self, timer, clock):
        timer.start_iteration()
        timer.pause()
        clock.advance(1000)
        timer.pause()
        clock.advance(1000)
        timer.resume()
        assert timer.elapsed() == 0
        assert not timer.is_paused

    def test_resume_without_pause_is_noop(self, timer, clock):
        timer.start_iteration()
        clock.advance(200)
        timer.resume()
        assert timer.elapsed() == 200

    def test_end_iteration_records_history(self, timer, clock):
        timer.start_iteration()
        clock.advance(3000)
        assert timer.end_iteration() == 3000

        timer.start_iteration()
        clock.advance(1000)
        timer.pause()
        clock.advance(10000)
        assert timer.end_iteration() == 1000

        assert timer.history == [3000, 1000]
        assert timer.average_time() == 2000
        assert timer.elapsed() == 0

    def test_end_without_start_records_nothing(self, timer):
        assert timer.end_iteration() == 0
        assert timer.history == []

    def test_history_is_a_copy(self, timer, clock):
        timer.start_iteration()
        clock.advance(10)
        timer.end_iteration()
        timer.history.append(99)
        assert timer.history == [10]

    def test_average_none_without_history(self, timer):
        assert timer.average_time() is None
        assert timer.estimated_total(3) is None

    def test_estimated_total(self, timer, clock):
        timer.start_iteration()
        clock.advance(2000)
        timer.end_iteration()
        assert timer.estimated_total(4) == 8000
        assert timer.estimated_total(0) is None

    def test_total_active_time_includes_current(self, timer, clock):
        timer.start_iteration()
        clock.advance(1000)
        timer.end_iteration()
        timer.start_iteration()
        clock.advance(250)
        assert timer.total_active_time() == 1250

    def test_elapsed_never_negative(self, timer, clock):
        timer.start_iteration()
        clock.advance(-100)
        assert timer.elapsed() == 0

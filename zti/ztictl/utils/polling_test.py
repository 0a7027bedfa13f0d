"""Tests for the polling helpers."""

import pytest

from zti.ztictl.utils.polling import PollingCancelledError
from zti.ztictl.utils.polling import poll_for_value


class _FakeClock:
    """Records requested sleeps instead of sleeping."""

    def __init__(self, stop_after: int | None = None) -> None:
        self.sleeps: list[float] = []
        self._stop_after = stop_after

    def wait(self, seconds: float) -> bool:
        self.sleeps.append(seconds)
        return self._stop_after is not None and len(self.sleeps) >= self._stop_after


def test_poll_for_value_returns_first_non_none_value() -> None:
    """poll_for_value should return as soon as fetch produces a value."""
    values = iter([None, None, "done"])
    clock = _FakeClock()
    result = poll_for_value(lambda: next(values), timeout=60.0, poll_interval=2.0, wait=clock.wait)
    assert result == "done"
    assert clock.sleeps == [2.0, 2.0]


def test_poll_for_value_returns_none_after_timeout() -> None:
    """poll_for_value should give up once the wall-clock budget is spent."""
    result = poll_for_value(lambda: None, timeout=0.05, poll_interval=0.01)
    assert result is None


def test_poll_for_value_raises_when_cancelled() -> None:
    """A wait that reports shutdown should stop polling with PollingCancelledError."""
    clock = _FakeClock(stop_after=1)
    with pytest.raises(PollingCancelledError):
        poll_for_value(lambda: None, timeout=60.0, poll_interval=1.0, wait=clock.wait)

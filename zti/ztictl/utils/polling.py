import threading
import time
from collections.abc import Callable
from typing import TypeVar

T = TypeVar("T")


class PollingCancelledError(Exception):
    """Raised when a poll loop is woken by a shutdown request before it finished."""


def _default_wait(seconds: float) -> bool:
    threading.Event().wait(seconds)
    return False


def poll_for_value(
    fetch: Callable[[], T | None],
    timeout: float,
    poll_interval: float,
    # Sleeps for the given seconds; returns True if the loop should stop early.
    wait: Callable[[float], bool] = _default_wait,
) -> T | None:
    """Call fetch until it returns something other than None, or the wall-clock timeout expires.

    fetch is always called at least once. Never sleeps past the deadline.
    Returns None on timeout; raises PollingCancelledError if wait reports a shutdown.
    """
    deadline = time.monotonic() + timeout
    while True:
        value = fetch()
        if value is not None:
            return value
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        if wait(min(poll_interval, remaining)):
            raise PollingCancelledError("Polling was cancelled by a shutdown request")

"""Root conftest for the global test lock and the suite time limit."""

import fcntl
import os
import time
from pathlib import Path
from typing import Final
from typing import TextIO

import pytest

# A constant location in /tmp so every pytest process on the machine finds it
_GLOBAL_TEST_LOCK_PATH: Final[Path] = Path("/tmp/ztictl_pytest_global_test_lock")

# The handle must stay open for the whole session so the flock is held.
# When the process exits for any reason, the OS closes it and releases the lock.
_SESSION_LOCK_HANDLE_ATTR: Final[str] = "_global_test_lock_file_handle"

_LOCAL_MAX_DURATION_SECONDS: Final[float] = 300.0
_CI_MAX_DURATION_SECONDS: Final[float] = 600.0


def is_xdist_worker() -> bool:
    """Return True if we are running as an xdist worker process."""
    return "PYTEST_XDIST_WORKER" in os.environ


def print_lock_message(message: str, fd: int = 2) -> None:
    """Print a message that will show even without pytest's -s flag."""
    os.write(fd, f"\n{message}\n".encode())


def acquire_global_test_lock(lock_path: Path) -> TextIO:
    """Acquire an exclusive lock on the given path, returning the open file handle.

    If the lock is busy, prints a waiting message to stderr and then blocks.
    The lock is released when the handle is closed or the process exits.
    """
    lock_path.touch(exist_ok=True)
    lock_file_handle = lock_path.open("w")

    try:
        fcntl.flock(lock_file_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return lock_file_handle
    except BlockingIOError:
        pass

    print_lock_message(
        "PYTEST GLOBAL LOCK: Another pytest process is running.\n"
        "Waiting for it to complete before starting this test run...",
    )
    fcntl.flock(lock_file_handle.fileno(), fcntl.LOCK_EX)
    print_lock_message("PYTEST GLOBAL LOCK: Lock acquired, proceeding with tests.")
    return lock_file_handle


@pytest.hookimpl(tryfirst=True)
def pytest_sessionstart(session: pytest.Session) -> None:
    """Acquire the global test lock and record the start time.

    The lock and polling tests assert on timeouts of a few seconds, so two
    pytest runs competing for the CPU make them flaky. xdist workers skip the
    lock since the controller already holds it.

    The start time is recorded after the lock is acquired so waiting does not
    count against the suite time limit.
    """
    if not is_xdist_worker():
        lock_handle = acquire_global_test_lock(lock_path=_GLOBAL_TEST_LOCK_PATH)
        setattr(session, _SESSION_LOCK_HANDLE_ATTR, lock_handle)
    setattr(session, "start_time", time.time())


@pytest.hookimpl(trylast=True)
def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    """Fail the run if the whole suite took longer than its limit."""
    if not hasattr(session, "start_time"):
        return
    duration = time.time() - session.start_time

    if "PYTEST_MAX_DURATION" in os.environ:
        max_duration = float(os.environ["PYTEST_MAX_DURATION"])
    elif "CI" in os.environ:
        max_duration = _CI_MAX_DURATION_SECONDS
    else:
        max_duration = _LOCAL_MAX_DURATION_SECONDS

    if duration > max_duration:
        pytest.exit(
            f"Test suite took {duration:.2f}s, exceeding the {max_duration}s limit",
            returncode=1,
        )

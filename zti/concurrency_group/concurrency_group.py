import math
import threading
import time
from contextlib import AbstractContextManager
from enum import auto
from threading import Lock
from typing import Any
from typing import Callable
from typing import Final

from pydantic import ConfigDict
from pydantic import Field
from pydantic import PrivateAttr

from zti.concurrency_group.errors import ConcurrencyExceptionGroup
from zti.concurrency_group.errors import ConcurrentShutdownError
from zti.concurrency_group.errors import InvalidConcurrencyGroupStateError
from zti.concurrency_group.errors import StrandTimedOutError
from zti.concurrency_group.thread_utils import ObservableThread
from zti.zti_common.mutable_model import MutableModel
from zti.zti_common.primitives import UpperCaseStrEnum

DEFAULT_EXIT_TIMEOUT_SECONDS: Final[float] = 4.0


class ConcurrencyGroupState(UpperCaseStrEnum):
    """Lifecycle state of a concurrency group."""

    INSTANTIATED = auto()
    ACTIVE = auto()
    EXITING = auto()
    EXITED = auto()


class _TrackedThread(MutableModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    thread: ObservableThread
    # Checked threads turn their exceptions into a group failure on exit.
    is_checked: bool


class ConcurrencyGroup(MutableModel, AbstractContextManager):
    """
    A context manager that owns the threads started within it.

    - Threads are joined when the `with` block exits, bounded by exit_timeout_seconds.
    - Failures of checked threads are raised as a ConcurrencyExceptionGroup.
    - Child groups inherit shutdown: shutting down a parent wakes every wait() below it.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    exit_timeout_seconds: float = DEFAULT_EXIT_TIMEOUT_SECONDS
    parent: "ConcurrencyGroup | None" = None
    shutdown_event: threading.Event = Field(default_factory=threading.Event)

    _state: ConcurrencyGroupState = PrivateAttr(default=ConcurrencyGroupState.INSTANTIATED)
    _threads: list[_TrackedThread] = PrivateAttr(default_factory=list)
    _children: list["ConcurrencyGroup"] = PrivateAttr(default_factory=list)
    _lock: Lock = PrivateAttr(default_factory=Lock)

    def __enter__(self) -> "ConcurrencyGroup":
        with self._lock:
            if self._state != ConcurrencyGroupState.INSTANTIATED:
                raise InvalidConcurrencyGroupStateError(
                    f"This concurrency group has been already activated (`{self.name}`)."
                )
            self._state = ConcurrencyGroupState.ACTIVE
        return self

    def __exit__(self, exc_type: type | None, exc_value: BaseException | None, traceback: Any) -> None:
        with self._lock:
            self._state = ConcurrencyGroupState.EXITING
        try:
            self._exit(exc_value)
        finally:
            self._state = ConcurrencyGroupState.EXITED

    def _exit(self, exc_value: BaseException | None) -> None:
        deadline = time.monotonic() + self.exit_timeout_seconds
        exceptions: list[Exception] = []
        with self._lock:
            threads = list(self._threads)

        for tracked in threads:
            remaining = max(0.0, deadline - time.monotonic())
            _join_without_raising(tracked.thread, remaining)
            if tracked.thread.is_alive():
                exceptions.append(
                    StrandTimedOutError(
                        f"Thread `{tracked.thread.name} ({tracked.thread.target_name})` "
                        "did not finish in time and is still alive."
                    )
                )
                continue
            failure = tracked.thread.exception
            if tracked.is_checked and isinstance(failure, Exception):
                exceptions.append(failure)

        # A BaseException (KeyboardInterrupt, SystemExit) keeps propagating unchanged.
        if exc_value is not None and not isinstance(exc_value, Exception):
            return
        if len(exceptions) == 0:
            return
        message = f"{len(exceptions)} strands failed in concurrency group `{self.name}`."
        if exc_value is not None:
            assert isinstance(exc_value, Exception)
            raise ConcurrencyExceptionGroup(message, [exc_value, *exceptions], main_exception=exc_value) from exc_value
        raise ConcurrencyExceptionGroup(message, exceptions)

    @property
    def state(self) -> ConcurrencyGroupState:
        return self._state

    def is_shutting_down(self) -> bool:
        current: ConcurrencyGroup | None = self
        while current is not None:
            if current.shutdown_event.is_set():
                return True
            current = current.parent
        return False

    def wait(self, seconds: float) -> bool:
        """Sleep for up to `seconds`, returning True early if the group is shut down."""
        if self.is_shutting_down():
            return True
        return self.shutdown_event.wait(timeout=max(0.0, seconds))

    def shutdown(self) -> None:
        with self._lock:
            children = list(self._children)
        for child in children:
            child.shutdown()
        self.shutdown_event.set()

    def _raise_if_not_startable(self) -> None:
        if self._state != ConcurrencyGroupState.ACTIVE:
            raise InvalidConcurrencyGroupStateError(
                f"Concurrency group `{self.name}` not active: the state is {self._state}."
            )
        if self.is_shutting_down():
            raise ConcurrentShutdownError(f"The concurrency group is shutting down: `{self.name}`.")

    def start_new_thread(
        self,
        target: Callable[..., Any],
        args: tuple = (),
        kwargs: dict | None = None,
        name: str | None = None,
        daemon: bool = True,
        silenced_exceptions: tuple[type[BaseException], ...] = (),
        is_checked: bool = True,
    ) -> ObservableThread:
        thread = ObservableThread(
            target=target,
            args=args,
            kwargs=kwargs,
            name=name,
            daemon=daemon,
            silenced_exceptions=silenced_exceptions,
        )
        with self._lock:
            self._raise_if_not_startable()
            thread.start()
            self._threads = [t for t in self._threads if t.thread.is_alive() or t.thread.exception is not None]
            self._threads.append(_TrackedThread(thread=thread, is_checked=is_checked))
        return thread

    def make_concurrency_group(
        self,
        name: str,
        exit_timeout_seconds: float = DEFAULT_EXIT_TIMEOUT_SECONDS,
    ) -> "ConcurrencyGroup":
        """Create a child group whose waits are woken by this group's shutdown."""
        child = ConcurrencyGroup(name=name, exit_timeout_seconds=exit_timeout_seconds, parent=self)
        with self._lock:
            self._raise_if_not_startable()
            self._children = [c for c in self._children if c.state != ConcurrencyGroupState.EXITED]
            self._children.append(child)
        return child


def _join_without_raising(thread: ObservableThread, timeout: float) -> None:
    # The failure is collected from thread.exception afterwards.
    # Thread.join rejects an infinite timeout; None waits without a deadline.
    threading.Thread.join(thread, None if math.isinf(timeout) else timeout)

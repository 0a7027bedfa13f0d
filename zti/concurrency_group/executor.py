import threading
from concurrent.futures import Future
from contextlib import AbstractContextManager
from queue import Empty
from queue import Queue
from typing import Any
from typing import Callable
from typing import TypeVar

from pydantic import ConfigDict

from zti.concurrency_group.concurrency_group import ConcurrencyGroup
from zti.zti_common.frozen_model import FrozenModel

T = TypeVar("T")


class _WorkItem(FrozenModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    future: Future
    fn: Callable[..., Any]
    args: tuple
    kwargs: dict[str, Any]

    def run(self) -> None:
        if not self.future.set_running_or_notify_cancel():
            return
        try:
            result = self.fn(*self.args, **self.kwargs)
        except Exception as e:
            self.future.set_exception(e)
        else:
            self.future.set_result(result)


class ConcurrencyGroupExecutor(AbstractContextManager):
    """Executor backed by at most `max_workers` threads of a child ConcurrencyGroup.

    Submissions go onto a queue that the workers drain; a worker is only started
    when every existing one is busy. Exiting the `with` block waits for the queue
    to drain. If the block raised, or the parent group is shutting down, work that
    has not started yet is cancelled instead of run.
    """

    def __init__(
        self,
        parent_cg: ConcurrencyGroup,
        name: str,
        max_workers: int,
    ) -> None:
        if max_workers <= 0:
            raise ValueError(f"max_workers must be > 0, got {max_workers}")
        self._parent_cg = parent_cg
        self._name = name
        self._max_workers = max_workers
        self._work: Queue[_WorkItem | None] = Queue()
        self._lock = threading.Lock()
        self._worker_count = 0
        self._idle_count = 0
        self._cg: ConcurrencyGroup | None = None

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def __enter__(self) -> "ConcurrencyGroupExecutor":
        self._cg = self._parent_cg.make_concurrency_group(
            name=self._name,
            exit_timeout_seconds=float("inf"),
        )
        self._cg.__enter__()
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        assert self._cg is not None
        if exc_val is not None:
            self._cancel_pending()
        with self._lock:
            worker_count = self._worker_count
        for _ in range(worker_count):
            self._work.put(None)
        self._cg.__exit__(exc_type, exc_val, exc_tb)

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Future[T]":
        """Queue a callable; its result or exception is delivered through the returned future."""
        assert self._cg is not None
        future: Future[T] = Future()
        self._work.put(_WorkItem(future=future, fn=fn, args=args, kwargs=kwargs))
        with self._lock:
            if self._idle_count > 0:
                self._idle_count -= 1
                return future
            if self._worker_count >= self._max_workers:
                return future
            self._worker_count += 1
            worker_index = self._worker_count
        self._cg.start_new_thread(
            target=self._worker_loop,
            name=f"{self._name}-worker-{worker_index}",
            is_checked=False,
        )
        return future

    def _worker_loop(self) -> None:
        assert self._cg is not None
        while True:
            item = self._work.get()
            if item is None:
                return
            if self._cg.is_shutting_down():
                item.future.cancel()
            else:
                item.run()
            with self._lock:
                self._idle_count += 1

    def _cancel_pending(self) -> None:
        while True:
            try:
                item = self._work.get_nowait()
            except Empty:
                return
            if item is not None:
                item.future.cancel()

import threading
from typing import Any
from typing import Callable

from loguru import logger


class ObservableThread(threading.Thread):
    """Thread that records the exception raised by its target instead of losing it."""

    def __init__(
        self,
        target: Callable[..., Any],
        args: tuple = (),
        kwargs: dict | None = None,
        name: str | None = None,
        daemon: bool = True,
        silenced_exceptions: tuple[type[BaseException], ...] = (),
    ) -> None:
        super().__init__(name=name, daemon=daemon)
        self._target_callable = target
        self._target_name = getattr(target, "__name__", None)
        self._call_args = args
        self._call_kwargs = kwargs or {}
        self._exception: BaseException | None = None
        # Exceptions of these types are recorded but not logged as errors.
        self._silenced_exceptions = silenced_exceptions

    @property
    def target_name(self) -> str | None:
        return self._target_name

    @property
    def exception(self) -> BaseException | None:
        """The exception raised by the target, if any."""
        return self._exception

    def run(self) -> None:
        try:
            self._target_callable(*self._call_args, **self._call_kwargs)
        except BaseException as e:
            self._exception = e
            if isinstance(e, self._silenced_exceptions):
                return
            logger.opt(exception=e).error("Error in thread '{}' with target '{}'", self.name, self.target_name)
            raise

    def join(self, timeout: float | None = None) -> None:
        """Wait for the thread and re-raise its exception, if any."""
        super().join(timeout)
        self.maybe_raise()

    def maybe_raise(self) -> None:
        if self._exception is not None:
            raise self._exception

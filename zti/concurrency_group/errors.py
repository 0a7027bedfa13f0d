from collections.abc import Sequence


class ConcurrencyGroupError(Exception):
    """Base exception for all concurrency group errors."""


class InvalidConcurrencyGroupStateError(ConcurrencyGroupError):
    """Raised when a group is used outside its active lifetime."""


class StrandTimedOutError(ConcurrencyGroupError):
    """Raised when a thread is still alive after the group's exit timeout."""


class ConcurrentShutdownError(ConcurrencyGroupError):
    """Raised when new work is started on a group that is shutting down."""


class ConcurrencyExceptionGroup(ExceptionGroup):
    """Exception group raised when one or more strands of a group failed.

    The "main" exception, if set, is the exception that was already propagating
    through the group's `with` block when it exited.
    """

    def __new__(cls, message: str, exceptions: Sequence[Exception], main_exception: Exception | None = None):
        return super().__new__(cls, message, exceptions)

    def __init__(self, message: str, exceptions: Sequence[Exception], main_exception: Exception | None = None):
        super().__init__(message, exceptions)
        self.main_exception = main_exception

    def __str__(self) -> str:
        base_str = super().__str__()
        if self.main_exception is not None:
            return f"{base_str}\nMain exception: {self.main_exception}"
        return base_str

    def only_exception_is_instance_of(self, exception_class: type[Exception]) -> bool:
        """Check if the group just wraps a single exception of the given class."""
        return len(self.exceptions) == 1 and isinstance(self.exceptions[0], exception_class)

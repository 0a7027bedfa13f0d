import functools
import inspect
import time
from collections.abc import Callable
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from typing import Final
from typing import ParamSpec
from typing import TypeVar

from loguru import logger

from zti.zti_common.pure import pure

P = ParamSpec("P")
R = TypeVar("R")


_MAX_LOG_VALUE_REPR_LENGTH: Final[int] = 200

# Argument names whose values must never reach a log sink (file payloads, encoded blobs).
_REDACTED_ARG_NAMES: Final[frozenset[str]] = frozenset({"payload", "content", "data"})


@pure
def _format_arg_value(value: Any) -> str:
    """Format an argument value for logging, truncating if too long."""
    str_value = repr(value)
    if len(str_value) > _MAX_LOG_VALUE_REPR_LENGTH:
        return str_value[: _MAX_LOG_VALUE_REPR_LENGTH - 3] + "..."
    return str_value


@pure
def _format_log_fields(arguments: dict[str, Any]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for name, value in arguments.items():
        if name in _REDACTED_ARG_NAMES:
            fields[name] = "<redacted>"
        else:
            fields[name] = _format_arg_value(value)
    return fields


def log_call(func: Callable[P, R]) -> Callable[P, R]:
    """Decorator that logs function calls with inputs and outputs.

    Entry is logged at debug level with the bound arguments as structured
    fields; the return value and elapsed time are logged at trace level.
    Intended for API entry points.
    """
    func_name = getattr(func, "__name__", repr(func))
    sig = inspect.signature(func)

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        bound_args = sig.bind(*args, **kwargs)
        bound_args.apply_defaults()
        logger.debug("Calling {}", func_name, **_format_log_fields(dict(bound_args.arguments)))

        start_time = time.monotonic()
        result = func(*args, **kwargs)
        elapsed = time.monotonic() - start_time

        logger.trace(f"Calling {func_name} [done in {elapsed:.5f} sec]", result=_format_arg_value(result))
        return result

    return wrapper


@contextmanager
def log_span(message: str, *args: Any, **context: Any) -> Iterator[None]:
    """Log a debug message on entry and a trace message with timing on exit.

    Keyword arguments are bound with logger.contextualize, so every message
    logged inside the span carries them (instance_id, region, ...).
    """
    with logger.contextualize(**context):
        logger.debug(message, *args)
        start_time = time.monotonic()
        try:
            yield
        except BaseException:
            elapsed = time.monotonic() - start_time
            logger.trace(message + " [failed after {:.5f} sec]", *args, elapsed)
            raise
        else:
            elapsed = time.monotonic() - start_time
            logger.trace(message + " [done in {:.5f} sec]", *args, elapsed)

from collections.abc import Callable
from typing import TypeVar

_F = TypeVar("_F", bound=Callable[..., object])


def pure(func: _F) -> _F:
    """Mark a function as pure: no I/O, no mutation of outside state, same output for same input.

    Advisory only. Nothing is checked at runtime; the marker tells readers
    (and tests) that the function can be called freely without mocks.
    """
    return func

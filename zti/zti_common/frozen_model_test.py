"""Tests for FrozenModel."""

import pytest
from pydantic import ValidationError

from zti.zti_common.frozen_model import FrozenModel
from zti.zti_common.primitives import PositiveInt


class _Point(FrozenModel):
    x: int
    y: PositiveInt


def test_frozen_model_rejects_mutation() -> None:
    """Assigning to a field of a frozen model should fail."""
    point = _Point(x=1, y=2)
    with pytest.raises(ValidationError):
        point.x = 5


def test_frozen_model_rejects_unknown_fields() -> None:
    """Unknown fields should be rejected."""
    with pytest.raises(ValidationError):
        _Point(x=1, y=2, z=3)


def test_evolve_returns_updated_copy() -> None:
    """evolve should leave the original untouched and return a new model."""
    point = _Point(x=1, y=2)
    moved = point.evolve(x=10)
    assert moved == _Point(x=10, y=2)
    assert point.x == 1


def test_evolve_validates_new_values() -> None:
    """evolve should run validation on replaced values."""
    point = _Point(x=1, y=2)
    with pytest.raises(ValidationError):
        point.evolve(y=0)

from enum import StrEnum
from typing import Any
from typing import Self

from pydantic import GetCoreSchemaHandler
from pydantic_core import CoreSchema
from pydantic_core import core_schema


class UpperCaseStrEnum(StrEnum):
    """A StrEnum whose auto() values are the upper-cased member names."""

    @staticmethod
    def _generate_next_value_(
        name: str,
        start: int,
        count: int,
        last_values: list[str],
    ) -> str:
        return name.upper()


class NonEmptyStr(str):
    """A string that cannot be empty or whitespace-only. Surrounding whitespace is stripped."""

    def __new__(cls, value: str) -> Self:
        if not value or not value.strip():
            raise ValueError(f"{cls.__name__} cannot be empty")
        return super().__new__(cls, value.strip())

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: GetCoreSchemaHandler,
    ) -> CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls,
            core_schema.str_schema(min_length=1),
            serialization=core_schema.to_string_ser_schema(),
        )


class PositiveInt(int):
    """An integer that must be > 0 (worker counts, byte thresholds)."""

    def __new__(cls, value: int) -> Self:
        if value <= 0:
            raise ValueError(f"{cls.__name__} must be > 0, got {value}")
        return super().__new__(cls, value)

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: GetCoreSchemaHandler,
    ) -> CoreSchema:
        return core_schema.no_info_after_validator_function(cls, core_schema.int_schema(gt=0))


class PositiveFloat(float):
    """A float that must be > 0 (timeouts, poll intervals)."""

    def __new__(cls, value: float) -> Self:
        if value <= 0:
            raise ValueError(f"{cls.__name__} must be > 0, got {value}")
        return super().__new__(cls, value)

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: GetCoreSchemaHandler,
    ) -> CoreSchema:
        return core_schema.no_info_after_validator_function(cls, core_schema.float_schema(gt=0))


class NonNegativeFloat(float):
    """A float that must be >= 0 (delays that may be disabled with zero)."""

    def __new__(cls, value: float) -> Self:
        if value < 0:
            raise ValueError(f"{cls.__name__} must be >= 0, got {value}")
        return super().__new__(cls, value)

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: GetCoreSchemaHandler,
    ) -> CoreSchema:
        return core_schema.no_info_after_validator_function(cls, core_schema.float_schema(ge=0))

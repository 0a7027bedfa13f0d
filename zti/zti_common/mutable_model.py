from pydantic import BaseModel
from pydantic import ConfigDict


class MutableModel(BaseModel):
    """Base class for pydantic models whose attributes may change after construction.

    Used for objects with a lifecycle (concurrency groups, running aggregations),
    never for values that cross an API boundary.
    """

    model_config = ConfigDict(
        frozen=False,
        extra="forbid",
        arbitrary_types_allowed=False,
        validate_assignment=True,
    )

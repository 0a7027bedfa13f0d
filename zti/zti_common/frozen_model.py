from typing import Any
from typing import Self

from pydantic import BaseModel
from pydantic import ConfigDict


class FrozenModel(BaseModel):
    """Base class for immutable pydantic models that prevent attribute mutation after construction."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=False,
    )

    def evolve(self, **changes: Any) -> Self:
        """Return a re-validated copy of this model with some fields replaced.

        Unlike model_copy(update=...), the new values go through validation,
        so a bad status or an empty id is rejected here rather than later.
        """
        values = {name: getattr(self, name) for name in type(self).model_fields}
        values.update(changes)
        return type(self)(**values)

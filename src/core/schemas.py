"""Shared pydantic helpers for wire-format schemas."""
from typing import Annotated, Any
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel


def _blank_to_none(value: Any) -> Any:
    """Treat empty form values ("" or whitespace) as missing."""
    if isinstance(value, str) and not value.strip():
        return None
    return value


# Form inputs send numbers as strings and unset numbers as ""
OptionalInt = Annotated[int | None, BeforeValidator(_blank_to_none)]
OptionalUUID = Annotated[UUID | None, BeforeValidator(_blank_to_none)]


class CamelModel(BaseModel):
    """Base schema that speaks camelCase on the wire and rejects unknown fields."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

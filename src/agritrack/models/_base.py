"""Base model for agritrack records.

Every record inherits from :class:`AgriBaseModel` which provides:

* ``alias_generator=to_camel`` so the delivery service's camelCase keys
  map automatically to snake_case fields.
* A ``model_validator(mode="before")`` that strips placeholder values
  (``None``, ``""``, ``"--"``, NaN) so the field default is used.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from agritrack._normalize import parse_timestamp

# Placeholder strings meaning "not available".
_SENTINELS = frozenset({"", "--", "NaN", "nan", "null"})


def _coerce_timestamp(value: Any) -> Any:
    parsed = parse_timestamp(value)
    # Leave unparseable input to pydantic so it reports a validation error.
    return parsed if parsed is not None else value


Timestamp = Annotated[datetime, BeforeValidator(_coerce_timestamp)]
"""Annotated type that coerces epoch seconds/ms or ISO strings to UTC datetimes."""


class AgriBaseModel(BaseModel):
    """Base for agritrack models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_placeholders(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        return AgriBaseModel._clean_dict(values)

"""
Base model and shared field rules for order plane records.

- BaseModel: frozen, strict, versioned snapshots handed to callers
- SymbolMixin: canonical symbol field
- normalize_symbol / as_utc / utc_now: the one place symbols and
  timestamps are normalized, for models and for plain dataclasses alike
"""

import re
from datetime import datetime, timezone
from typing import Annotated, Optional

from pydantic import BaseModel as PydanticBaseModel, ConfigDict, Field, field_validator

# BRK.B, BAJAJ-AUTO, M&M
SYMBOL_PATTERN = re.compile(r'^[A-Z0-9][A-Z0-9.\-&]{0,19}$')


def normalize_symbol(value: str) -> str:
    """Canonical spelling of a symbol (upper case, stripped); ValueError if malformed."""
    v = value.upper().strip()
    if not SYMBOL_PATTERN.match(v):
        raise ValueError(
            f"Invalid symbol format: '{v}'. Must be 1-20 characters of "
            "A-Z, 0-9, '.', '-' or '&', starting with a letter or digit"
        )
    return v


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BaseModel(PydanticBaseModel):
    """
    Immutable record exchanged across component boundaries.

    Strict validation: callers build these from already-typed values, so
    coercion would only hide bugs. ``schema_version`` travels with every
    persisted JSON payload (routing decisions, sub-positions).
    """

    model_config = ConfigDict(
        frozen=True,
        strict=True,
        validate_assignment=True,
        use_enum_values=False,
        arbitrary_types_allowed=False,
    )

    schema_version: Annotated[int, Field(default=1, ge=1)]


class SymbolMixin(PydanticBaseModel):
    """Adds a canonical ``symbol`` field (see normalize_symbol)."""

    symbol: Annotated[str, Field(min_length=1, max_length=20)]

    @field_validator('symbol')
    @classmethod
    def validate_symbol_format(cls, v: str) -> str:
        return normalize_symbol(v)

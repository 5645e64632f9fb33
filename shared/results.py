"""Typed results handed back across the order plane boundary."""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from shared.errors import ErrorCode, OrderPlaneError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Either a value or an OrderPlaneError.

    Example:
        >>> result = await service.cancel_order(order_id)
        >>> if not result.ok and result.code is ErrorCode.ALREADY_TERMINAL:
        ...     pass  # the fill won the race
    """

    value: Optional[T] = None
    error: Optional[OrderPlaneError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error is not None else None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: OrderPlaneError) -> "Result":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value

    def __bool__(self) -> bool:
        return self.ok

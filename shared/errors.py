"""
Error taxonomy for the order plane.

Two families live here:

- OrderPlaneError: domain errors surfaced to callers. Every subclass carries
  an ErrorCode so the service boundary can hand back a typed Result instead
  of raising.
- BrokerError: transport/broker failures raised by adapters. The failure
  recovery manager classifies them (retry, reroute, poll, surface).

PersistenceError is deliberately outside both families: losing the
persistence layer halts order submission.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error identifiers returned to callers."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNSUPPORTED_ORDER_TYPE = "UNSUPPORTED_ORDER_TYPE"
    INVALID_ORDER_PARAMETERS = "INVALID_ORDER_PARAMETERS"
    NO_AVAILABLE_BROKER = "NO_AVAILABLE_BROKER"
    SUBMISSION_FAILED = "SUBMISSION_FAILED"
    ORDER_REJECTED = "ORDER_REJECTED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    RECONCILIATION_CONFLICT = "RECONCILIATION_CONFLICT"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"


class OrderPlaneError(Exception):
    """Base class for errors returned to order plane callers."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ValidationError(OrderPlaneError):
    """Malformed order intent; rejected before any broker interaction."""
    code = ErrorCode.VALIDATION_ERROR


class UnsupportedOrderType(OrderPlaneError):
    """Target broker cannot represent the order (type, TIF or symbol)."""
    code = ErrorCode.UNSUPPORTED_ORDER_TYPE


class InvalidOrderParameters(OrderPlaneError):
    """Numeric constraint violated (tick size, lot size, quantity floor)."""
    code = ErrorCode.INVALID_ORDER_PARAMETERS

    def __init__(self, message: str, constraint: str, field: Optional[str] = None, **details: Any):
        super().__init__(message, constraint=constraint, field=field, **details)
        self.constraint = constraint
        self.field = field


class NoAvailableBroker(OrderPlaneError):
    """No healthy broker candidate could take the order."""
    code = ErrorCode.NO_AVAILABLE_BROKER

    def __init__(self, message: str, decision=None, **details: Any):
        super().__init__(message, **details)
        self.decision = decision


class SubmissionFailed(OrderPlaneError):
    """Transient failures exhausted the retry/reroute policy."""
    code = ErrorCode.SUBMISSION_FAILED


class OrderRejected(OrderPlaneError):
    """Broker-side business rejection (margin, risk limits). Never retried."""
    code = ErrorCode.ORDER_REJECTED

    def __init__(self, reason: str, broker_id: Optional[str] = None, **details: Any):
        super().__init__(f"Order rejected by {broker_id or 'broker'}: {reason}",
                         reason=reason, broker_id=broker_id, **details)
        self.reason = reason
        self.broker_id = broker_id


class InvalidTransition(OrderPlaneError):
    """Requested lifecycle transition is not allowed from the current state."""
    code = ErrorCode.INVALID_TRANSITION


class AlreadyTerminal(OrderPlaneError):
    """Order already reached FILLED, CANCELLED, REJECTED or EXPIRED."""
    code = ErrorCode.ALREADY_TERMINAL


class ReconciliationConflict(OrderPlaneError):
    """Broker event contradicts recorded history; order is frozen."""
    code = ErrorCode.RECONCILIATION_CONFLICT


class OrderNotFound(OrderPlaneError):
    code = ErrorCode.ORDER_NOT_FOUND


class PersistenceError(Exception):
    """Durable store unavailable. Fatal: order submission halts."""


# ============================================================================
# Broker transport errors (raised by adapters)
# ============================================================================

class BrokerError(Exception):
    """Base class for adapter-level failures."""

    #: whether the request may have reached the broker
    outcome_unknown: bool = False
    #: whether the failure is worth retrying
    transient: bool = True

    def __init__(self, message: str, broker_id: Optional[str] = None):
        super().__init__(message)
        self.broker_id = broker_id


class BrokerUnavailable(BrokerError):
    """Request never reached the broker (connection refused, 502/503, DOWN)."""


class BrokerTimeout(BrokerError):
    """No answer in time; the broker may or may not have acted on it."""
    outcome_unknown = True


class BrokerRateLimited(BrokerError):
    """Local budget exhausted or broker answered 429."""


class BrokerRejection(BrokerError):
    """Business rejection with the broker's reason text."""
    transient = False

    def __init__(self, reason: str, broker_id: Optional[str] = None):
        super().__init__(reason, broker_id)
        self.reason = reason


class BrokerAuthError(BrokerError):
    """Authentication failed or token expired beyond refresh."""
    transient = False


class BrokerOrderNotFound(BrokerError):
    """Broker has no order for the given id."""
    transient = False

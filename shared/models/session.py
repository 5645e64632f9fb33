"""
Broker session models.

A BrokerSession is the live authentication/connection state for one
(user, broker) pair. It never holds the raw secret: credentials are
referenced by handle and the access token lives in the session manager's
token vault, referenced here by ``token_handle``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import SecretStr

from shared.models.base import BaseModel, utc_now


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


class OverallHealth(str, Enum):
    """Aggregate health across a user's sessions."""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    CRITICAL = "CRITICAL"


@dataclass
class BrokerSession:
    user_id: str
    broker_id: str
    session_id: str
    credentials_ref: str
    token_handle: str
    account_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    health: HealthStatus = HealthStatus.HEALTHY
    buying_power: Optional[float] = None
    last_heartbeat_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    active: bool = True

    @property
    def key(self) -> tuple:
        return (self.user_id, self.broker_id)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) + margin >= self.expires_at


@dataclass(frozen=True)
class SessionContext:
    """What an adapter needs to make an authenticated call."""
    user_id: str
    broker_id: str
    access_token: SecretStr
    account_id: Optional[str] = None


@dataclass(frozen=True)
class AuthGrant:
    """Adapter authentication result."""
    access_token: SecretStr
    expires_at: Optional[datetime] = None
    account_id: Optional[str] = None


@dataclass(frozen=True)
class AccountSnapshot:
    """Heartbeat payload: liveness plus buying power."""
    buying_power: Optional[float] = None
    server_time: Optional[datetime] = None


class SessionSnapshot(BaseModel):
    user_id: str
    broker_id: str
    session_id: str
    credentials_ref: str
    account_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    health: HealthStatus
    rate_limit_remaining: float
    buying_power: Optional[float] = None
    last_heartbeat_at: Optional[datetime] = None

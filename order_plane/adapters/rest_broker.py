"""
REST broker adapter.

Async HTTP adapter for brokers with a JSON REST API (httpx). The wire
spelling of requests and responses comes from a translation dialect;
this module owns transport concerns only:

- Authentication headers per session token
- Mapping transport failures and HTTP status codes onto BrokerError:

    connect error         -> BrokerUnavailable (never reached the broker)
    read/write timeout    -> BrokerTimeout     (outcome unknown)
    429                   -> BrokerRateLimited
    400 / 403 / 422       -> BrokerRejection   (broker's reason text)
    401                   -> BrokerAuthError
    404                   -> BrokerOrderNotFound
    502 / 503             -> BrokerUnavailable
    500 / 504             -> BrokerTimeout     (outcome unknown)

- Webhook ingestion: broker push notifications are decoded and delivered
  to the session's event sink like any other adapter event.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import SecretStr

from order_plane.adapters.base import BrokerAdapter, BrokerOrderStatus
from order_plane.translation.dialects import Dialect
from shared.errors import (
    BrokerAuthError,
    BrokerOrderNotFound,
    BrokerRateLimited,
    BrokerRejection,
    BrokerTimeout,
    BrokerUnavailable,
)
from shared.logging import redact_pii
from shared.models.session import AccountSnapshot, AuthGrant, SessionContext

logger = logging.getLogger(__name__)


class RestBrokerAdapter(BrokerAdapter):
    """
    Broker adapter over an HTTP JSON API.

    Usage:
        adapter = RestBrokerAdapter("alpaca", "https://paper-api.alpaca.markets",
                                    get_dialect("alpaca"))
        grant = await adapter.authenticate(user_id, secret)
        native_id = await adapter.submit(ctx, payload)
        await adapter.close()
    """

    pushes_events = False

    def __init__(
        self,
        broker_id: str,
        base_url: str,
        dialect: Dialect,
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(broker_id)
        self.dialect = dialect
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        ctx: Optional[SessionContext] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {}
        if ctx is not None:
            headers.update(self.dialect.auth_headers(ctx.access_token.get_secret_value()))
        try:
            response = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.ConnectError as exc:
            raise BrokerUnavailable(f"{method} {path}: {exc}", self.broker_id) from exc
        except httpx.TimeoutException as exc:
            raise BrokerTimeout(f"{method} {path}: timed out", self.broker_id) from exc
        except httpx.TransportError as exc:
            raise BrokerTimeout(f"{method} {path}: {exc}", self.broker_id) from exc

        if response.is_success:
            if not response.content:
                return None
            return self.dialect.unwrap(response.json())

        reason = self._error_reason(response)
        status = response.status_code
        logger.debug("broker %s %s %s -> %s %s", self.broker_id, method, path, status, reason)
        if status == 429:
            raise BrokerRateLimited(reason, self.broker_id)
        if status == 401:
            raise BrokerAuthError(reason, self.broker_id)
        if status == 404:
            raise BrokerOrderNotFound(reason, self.broker_id)
        if status in (502, 503):
            raise BrokerUnavailable(reason, self.broker_id)
        if status >= 500:
            raise BrokerTimeout(reason, self.broker_id)
        raise BrokerRejection(reason, self.broker_id)

    def _error_reason(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        return self.dialect.decode_error(body)

    # ------------------------------------------------------------------
    # broker API
    # ------------------------------------------------------------------
    async def authenticate(self, user_id: str, secret: SecretStr) -> AuthGrant:
        data = await self._request(
            "POST", self.dialect.token_path,
            json=self.dialect.auth_body(user_id, secret.get_secret_value()),
        )
        expires_at = None
        if data.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=float(data["expires_in"]))
        logger.info("broker %s authenticated user %s", self.broker_id, user_id)
        return AuthGrant(
            access_token=SecretStr(str(data["access_token"])),
            expires_at=expires_at,
            account_id=data.get("account_id"),
        )

    async def heartbeat(self, ctx: SessionContext) -> AccountSnapshot:
        data = await self._request("GET", self.dialect.account_path, ctx)
        return self.dialect.decode_account(data or {})

    async def submit(self, ctx: SessionContext, payload: Dict) -> str:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("broker %s submit %s", self.broker_id, redact_pii(payload))
        data = await self._request("POST", self.dialect.submit_path, ctx, json=payload)
        return self.dialect.decode_order_id(data)

    async def modify(self, ctx: SessionContext, native_id: str, payload: Dict) -> None:
        await self._request(self.dialect.modify_method, self.dialect.order_path(native_id), ctx, json=payload)

    async def cancel(self, ctx: SessionContext, native_id: str) -> None:
        await self._request("DELETE", self.dialect.order_path(native_id), ctx)

    async def get_order_status(self, ctx: SessionContext, native_id: str) -> BrokerOrderStatus:
        data = await self._request("GET", self.dialect.status_path(native_id), ctx)
        return self.dialect.decode_status(data)

    async def find_order(self, ctx: SessionContext, client_order_id: str) -> Optional[BrokerOrderStatus]:
        try:
            data = await self._request(
                "GET", self.dialect.orders_path, ctx,
                params=self.dialect.lookup_params(client_order_id),
            )
        except BrokerOrderNotFound:
            return None
        tag = self.dialect.lookup_params(client_order_id)
        wanted = next(iter(tag.values()))
        for row in self.dialect.decode_order_list(data):
            status = self.dialect.decode_status(row)
            if status.client_order_id in (client_order_id, wanted):
                return status
        return None

    async def get_positions(self, ctx: SessionContext) -> Dict[str, float]:
        data = await self._request("GET", self.dialect.positions_path, ctx)
        return self.dialect.decode_positions(data or [])

    # ------------------------------------------------------------------
    # push notifications
    # ------------------------------------------------------------------
    def handle_webhook(self, user_id: str, payload: Dict[str, Any]) -> bool:
        """Decode a broker push notification and deliver it to the session.

        Returns False when the notification carries no canonical event or
        the user has no live session.
        """
        status = self.dialect.decode_status(self.dialect.unwrap(payload))
        if status.event is None:
            return False
        return self._emit(user_id, status.native_id, status.event)

    async def close(self) -> None:
        await self._client.aclose()

"""
Async HTTP client for the remote order API (Linnworks).

Features:
- Session tokens exchanged from application credentials, cached with TTL
- One transparent re-authentication on 401/403
- Token bucket rate limiting on every call
- Request correlation IDs for tracing
- Typed errors (see ordersync.exceptions) for the sync engine's retry logic
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from ordersync.config import GatewayConfig, config
from ordersync.exceptions import (
    GatewayAuthError,
    GatewayConnectionError,
    GatewayDataError,
    GatewayError,
)
from ordersync.models import ProcessedOrderFilters, ProcessedOrdersPage
from ordersync.observability import Timer, get_correlation_id, get_logger
from ordersync.resilience import RateLimiter

logger = get_logger(__name__)

AUTH_FAILURE_CODES = (401, 403)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if value and value.strip().isdigit():
        return int(value.strip())
    return None


@dataclass(frozen=True)
class SessionToken:
    """Short-lived API session returned by AuthorizeByApplication."""
    token: str
    server: str
    expires_at: datetime

    def is_expiring_soon(self, margin_seconds: int = 300, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return now + timedelta(seconds=margin_seconds) >= self.expires_at

    @property
    def base_url(self) -> str:
        return self.server.rstrip("/") + "/api/"


class CredentialProvider:
    """
    Exchanges application credentials for session tokens.

    One provider per gateway; the cached session lives on the instance so
    tests and concurrent runs never share hidden state.
    """

    def __init__(
        self,
        application_id: str,
        application_secret: str,
        installation_token: str,
        auth_url: str = None,
        default_ttl_seconds: int = 1800,
        refresh_margin_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.application_id = application_id
        self.application_secret = application_secret
        self.installation_token = installation_token
        self.auth_url = auth_url or config.gateway.auth_url
        self.default_ttl_seconds = default_ttl_seconds
        self.refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock
        self._session: Optional[SessionToken] = None

    @classmethod
    def from_config(cls, gateway_config: GatewayConfig = None) -> "CredentialProvider":
        gateway_config = gateway_config or config.gateway
        return cls(
            application_id=gateway_config.application_id,
            application_secret=gateway_config.application_secret,
            installation_token=gateway_config.installation_token,
            auth_url=gateway_config.auth_url,
            default_ttl_seconds=gateway_config.session_ttl_seconds,
            refresh_margin_seconds=gateway_config.session_refresh_margin_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.application_id and self.application_secret and self.installation_token)

    def invalidate(self) -> None:
        """Drop the cached session so the next call re-authenticates."""
        self._session = None

    async def get_session(self, client: httpx.AsyncClient) -> SessionToken:
        """Return a valid session, authenticating when absent or about to expire."""
        session = self._session
        if session is not None and not session.is_expiring_soon(self.refresh_margin_seconds, self._clock()):
            return session

        self._session = await self._authorize(client)
        return self._session

    async def _authorize(self, client: httpx.AsyncClient) -> SessionToken:
        if not self.is_configured:
            raise GatewayAuthError("Remote order API credentials are not configured")

        payload = {
            "ApplicationId": self.application_id,
            "ApplicationSecret": self.application_secret,
            "Token": self.installation_token,
        }
        try:
            response = await client.post(self.auth_url, json=payload)
        except httpx.TimeoutException as e:
            raise GatewayConnectionError("Authentication request timed out", status_code=408) from e
        except httpx.RequestError as e:
            raise GatewayConnectionError("Authentication request failed", str(e)) from e

        if response.status_code in AUTH_FAILURE_CODES:
            raise GatewayAuthError(
                "Application credentials rejected",
                response.text[:200],
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"Authentication returned {response.status_code}",
                response.text[:200],
                status_code=response.status_code,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayDataError("Authentication response is not JSON", expected="object") from e

        if not isinstance(data, dict) or not data.get("Token") or not data.get("Server"):
            raise GatewayDataError(
                "Authentication response missing Token/Server",
                expected="object with Token and Server",
                got=type(data).__name__,
            )

        ttl = int(data.get("TTL") or self.default_ttl_seconds)
        logger.info("Authenticated with remote order API", extra={"server": data["Server"], "ttl": ttl})
        return SessionToken(
            token=data["Token"],
            server=data["Server"],
            expires_at=self._clock() + timedelta(seconds=ttl),
        )


class OrderGateway:
    """
    Remote order API client.

    Usage:
        async with OrderGateway(CredentialProvider.from_config()) as gateway:
            open_ids = await gateway.list_open_order_ids()
            details = await gateway.fetch_order_details(open_ids[:200])
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        gateway_config: GatewayConfig = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            credentials: Session token source
            gateway_config: Timeouts, batch limits and location
            rate_limiter: Defaults to requests_per_minute from config
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.credentials = credentials
        self.config = gateway_config or config.gateway
        self.rate_limiter = rate_limiter or RateLimiter.per_minute(self.config.requests_per_minute)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return self.credentials.is_configured

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.request_timeout,
                headers={"Accept": "application/json"},
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OrderGateway":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ═══════════════════════════════════════════════════════════════════════════
    # REQUEST PLUMBING
    # ═══════════════════════════════════════════════════════════════════════════

    async def _request(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        """
        POST to an API endpoint and return decoded JSON.

        Raises:
            GatewayConnectionError: Network errors and timeouts (408)
            GatewayAuthError: Session still rejected after re-authenticating
            GatewayError: Any other >= 400 response (429 carries retry_after)
            GatewayDataError: Body is not JSON
        """
        if not self._client:
            await self.connect()

        await self.rate_limiter.acquire()

        session = await self.credentials.get_session(self._client)
        response = await self._send(session, endpoint, payload)

        if response.status_code in AUTH_FAILURE_CODES:
            logger.warning(
                "Session rejected, re-authenticating",
                extra={"endpoint": endpoint, "status_code": response.status_code},
            )
            self.credentials.invalidate()
            session = await self.credentials.get_session(self._client)
            response = await self._send(session, endpoint, payload)
            if response.status_code in AUTH_FAILURE_CODES:
                raise GatewayAuthError(
                    f"{endpoint} rejected the session",
                    response.text[:200],
                    status_code=response.status_code,
                )

        if response.status_code >= 400:
            error_text = response.text[:500]
            logger.error(
                f"API error {response.status_code}: {error_text}",
                extra={"endpoint": endpoint, "status_code": response.status_code},
            )
            raise GatewayError(
                f"{endpoint} returned {response.status_code}",
                error_text,
                status_code=response.status_code,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise GatewayDataError(f"{endpoint} returned invalid JSON", response.text[:200]) from e

    async def _send(self, session: SessionToken, endpoint: str, payload: Dict[str, Any]) -> httpx.Response:
        headers = {"Authorization": session.token}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Request-ID"] = correlation_id

        try:
            with Timer(f"linnworks_{endpoint}", logger):
                return await self._client.post(session.base_url + endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Request timeout: {endpoint}", extra={"endpoint": endpoint, "timeout": self.config.request_timeout})
            raise GatewayConnectionError(
                f"Request timeout after {self.config.request_timeout}s", status_code=408
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Request failed: {endpoint} - {e}", extra={"endpoint": endpoint})
            raise GatewayConnectionError(f"Request to {endpoint} failed", str(e)) from e

    # ═══════════════════════════════════════════════════════════════════════════
    # ORDER METHODS
    # ═══════════════════════════════════════════════════════════════════════════

    async def list_open_order_ids(self) -> List[str]:
        """All open order ids at the configured fulfilment location, de-duplicated."""
        data = await self._request(
            "Orders/GetAllOpenOrders",
            {"fulfilmentCenter": self.config.location_id, "additionalFilter": ""},
        )
        if data is None:
            return []
        if not isinstance(data, list):
            raise GatewayDataError(
                "GetAllOpenOrders returned unexpected payload",
                expected="list",
                got=type(data).__name__,
            )
        return list(dict.fromkeys(str(order_id) for order_id in data if order_id))

    async def search_processed_orders(
        self,
        from_date: datetime,
        to_date: datetime,
        filters: ProcessedOrderFilters = None,
        page: int = 1,
        page_size: int = 200,
    ) -> ProcessedOrdersPage:
        """One page of processed-order ids in the window."""
        filters = filters or ProcessedOrderFilters()
        data = await self._request(
            "ProcessedOrders/SearchProcessedOrders",
            filters.to_request(from_date, to_date, page, page_size),
        )
        if not isinstance(data, dict) or not isinstance(data.get("ProcessedOrders"), dict):
            raise GatewayDataError(
                "SearchProcessedOrders response missing 'ProcessedOrders'",
                expected="object",
                got=type(data).__name__,
            )
        return ProcessedOrdersPage.from_api(data, page)

    async def fetch_order_details(self, order_ids: List[str]) -> List[Dict[str, Any]]:
        """
        Full order details for up to ``max_batch_size`` ids.

        Raises:
            ValueError: more than ``max_batch_size`` ids requested
        """
        if len(order_ids) > self.config.max_batch_size:
            raise ValueError(
                f"Cannot fetch more than {self.config.max_batch_size} orders per request (got {len(order_ids)})"
            )
        if not order_ids:
            return []

        data = await self._request("Orders/GetOrdersById", {"pkOrderIds": list(order_ids)})
        if data is None:
            return []
        if not isinstance(data, list):
            raise GatewayDataError(
                "GetOrdersById returned unexpected payload",
                expected="list",
                got=type(data).__name__,
            )
        return data

"""Gateway REST client.

Uses httpx for async HTTP. One pooled :class:`httpx.AsyncClient` is kept per
identity binding (a proxy URL, or ``None`` for a direct connection), so every
node bound to the same proxy shares keep-alive connections.

All failures surface as :class:`NodeClientError` subclasses carrying a
structured :class:`~nodefleet.models.FailureKind`; callers classify on that,
never on the message text.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from nodefleet.models import (
    FailureKind,
    HardwareFingerprint,
    HealthResult,
    NodeDescriptor,
    PingResult,
    RegistrationResult,
    SessionResult,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://gateway-run.bls.dev/api/v1"
DEFAULT_IP_SERVICE_URL = "https://tight-block-2413.txlabs.workers.dev"
DEFAULT_HEALTH_URL = "https://gateway-run.bls.dev/health"


class NodeClientError(Exception):
    """Base error for gateway client failures."""

    kind = FailureKind.UNKNOWN

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NodeNetworkError(NodeClientError):
    """Raised on timeouts, resets and transient server errors."""

    kind = FailureKind.NETWORK


class NodeProxyError(NodeClientError):
    """Raised when the proxy cannot be built, reached or tunnelled through."""

    kind = FailureKind.PROXY


class NodeAuthError(NodeClientError):
    """Raised when the gateway returns 401 or 403."""

    kind = FailureKind.AUTHENTICATE


class MalformedResponseError(NodeClientError):
    """Raised when a body does not parse or lacks an expected field."""

    kind = FailureKind.MALFORMED_RESPONSE


class GatewayClient:
    """Async wrapper around the gateway node API.

    Call :meth:`aclose` (or use as an async context manager) when done.
    """

    def __init__(
        self,
        api_base_url: str = DEFAULT_API_BASE_URL,
        ip_service_url: str = DEFAULT_IP_SERVICE_URL,
        health_url: str = DEFAULT_HEALTH_URL,
        timeout: float = 30.0,
        extension_version: str = "0.1.7",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.ip_service_url = ip_service_url
        self.health_url = health_url
        self.timeout = timeout
        self.extension_version = extension_version
        self._transport = transport
        self._clients: dict[str | None, httpx.AsyncClient] = {}

    async def aclose(self) -> None:
        """Close every pooled HTTP client."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def register(
        self, node: NodeDescriptor, fingerprint: HardwareFingerprint
    ) -> RegistrationResult:
        """Register *node* (POST /nodes/{id})."""
        payload = {
            "ipAddress": node.ip,
            "hardwareId": node.hardware_id,
            "hardwareInfo": fingerprint.to_dict(),
            "extensionVersion": self.extension_version,
        }
        logger.debug(
            "Registering node %s with IP %s, hardware ID %s",
            node.label, node.ip, node.hardware_id,
        )
        data = await self._request(
            "POST", f"{self.api_base_url}/nodes/{node.node_id}",
            proxy=node.proxy, token=node.auth_token, json=payload,
        )
        return RegistrationResult(node_id=node.node_id, raw=self._expect_object(data))

    async def start_session(self, node: NodeDescriptor) -> SessionResult:
        """Start a session for *node* (POST /nodes/{id}/start-session)."""
        data = self._expect_object(await self._request(
            "POST", f"{self.api_base_url}/nodes/{node.node_id}/start-session",
            proxy=node.proxy, token=node.auth_token,
        ))
        return SessionResult(node_id=node.node_id, session_id=data.get("_id"), raw=data)

    async def stop_session(self, node: NodeDescriptor) -> dict:
        """Stop the session for *node* (POST /nodes/{id}/stop-session)."""
        data = await self._request(
            "POST", f"{self.api_base_url}/nodes/{node.node_id}/stop-session",
            proxy=node.proxy, token=node.auth_token,
        )
        return self._expect_object(data)

    async def ping(self, node: NodeDescriptor) -> PingResult:
        """Send one heartbeat for *node* (POST /nodes/{id}/ping)."""
        data = self._expect_object(await self._request(
            "POST", f"{self.api_base_url}/nodes/{node.node_id}/ping",
            proxy=node.proxy, token=node.auth_token,
        ))
        status = data.get("status")
        if status is not None and not isinstance(status, str):
            raise MalformedResponseError(f"Ping status is not a string: {status!r}")
        last_ping = None
        pings = data.get("pings")
        if isinstance(pings, list) and pings and isinstance(pings[-1], dict):
            last_ping = pings[-1].get("timestamp")
        return PingResult(node_id=node.node_id, status=status, last_ping=last_ping, raw=data)

    async def check_health(self, proxy: str | None = None) -> HealthResult:
        """Query the gateway health endpoint (GET /health)."""
        data = self._expect_object(await self._request("GET", self.health_url, proxy=proxy))
        status = self._require(data, "status")
        return HealthResult(status=str(status), raw=data)

    async def resolve_ip(self, proxy: str | None = None) -> str:
        """Return the public IP seen by the gateway through *proxy*."""
        data = self._expect_object(await self._request("GET", self.ip_service_url, proxy=proxy))
        ip = self._require(data, "ip")
        if not isinstance(ip, str) or not ip:
            raise MalformedResponseError(f"IP lookup returned an invalid address: {ip!r}")
        return ip

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _client_for(self, proxy: str | None) -> httpx.AsyncClient:
        client = self._clients.get(proxy)
        if client is None:
            # An explicit transport replaces proxy routing entirely.
            options: dict[str, Any] = {"timeout": self.timeout}
            if self._transport is not None:
                options["transport"] = self._transport
            else:
                options["proxy"] = proxy
            try:
                client = httpx.AsyncClient(**options)
            except (httpx.InvalidURL, ValueError) as exc:
                raise NodeProxyError(f"Cannot use proxy {proxy}: {exc}") from exc
            self._clients[proxy] = client
        return client

    async def _request(
        self,
        method: str,
        url: str,
        proxy: str | None = None,
        token: str | None = None,
        json: dict | None = None,
    ) -> Any:
        client = self._client_for(proxy)
        try:
            response = await client.request(
                method, url, headers=self._headers(token), json=json
            )
        except httpx.ProxyError as exc:
            raise NodeProxyError(f"Proxy failure for {url}: {exc}") from exc
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            if proxy is not None:
                raise NodeProxyError(f"Cannot connect through proxy to {url}: {exc}") from exc
            raise NodeNetworkError(f"Cannot reach {url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise NodeNetworkError(f"Transport error for {url}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise NodeClientError(f"HTTP error for {url}: {exc}") from exc

        self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"Failed to parse JSON from {url}: {response.text[:200]!r}",
                status_code=response.status_code,
            ) from exc

    def _headers(self, token: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        code = response.status_code
        if code < 400:
            return
        url = response.request.url
        if code == 407:
            raise NodeProxyError(f"Proxy authentication required for {url}", code)
        if code in (401, 403):
            raise NodeAuthError(f"Gateway returned {code} for {url}, check the auth token", code)
        if code == 429 or code >= 500:
            raise NodeNetworkError(f"Gateway returned {code} for {url}", code)
        raise NodeClientError(f"Gateway returned {code} for {url}", code)

    @staticmethod
    def _expect_object(data: Any) -> dict:
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Expected a JSON object, got {type(data).__name__}"
            )
        return data

    @staticmethod
    def _require(data: dict, key: str) -> Any:
        if key not in data:
            raise MalformedResponseError(f"Response is missing required field {key!r}")
        return data[key]

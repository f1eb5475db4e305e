"""Backend API client using httpx.

Provides authenticated access to backend endpoints with retries,
exponential backoff and typed error handling. One client (and its
connection pool) is shared by every resource client in a process.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import threading
from collections.abc import Callable
from types import TracebackType
from typing import Any, Self

import httpx

from apisync.auth.credentials import Credentials
from apisync.config import TransportConfig
from apisync.ids import ClientID, get_client_id
from apisync.models import (
    AgentError,
    AuthenticationError,
    HTTPError,
    RequestTimeoutError,
    TransportError,
)
from apisync.useragent import CLI_GIT_VERSION_HEADER, CLIENT_ID_HEADER, GIT_VERSION, user_agent

logger = logging.getLogger(__name__)

# 5xx responses worth retrying; 501 means the server will never support the call
NON_RETRYABLE_SERVER_ERRORS = frozenset({501})

API_KEY_HEADER = "x-api-key"
ENVIRONMENT_HEADER = "x-apisync-env"

APIErrorHandler = Callable[[str, str, Exception], None]


class ErrorReporter:
    """Forwards failed calls to a registered handler.

    Decouples the client from whatever telemetry the caller uses. The
    handler can be registered once; reads and the registration share a lock.
    """

    def __init__(self) -> None:
        self._handler: APIErrorHandler | None = None
        self._lock = threading.Lock()

    def register(self, handler: APIErrorHandler) -> None:
        """Register the handler.

        Raises:
            RuntimeError: If a handler is already registered
        """
        with self._lock:
            if self._handler is not None:
                raise RuntimeError("An API error handler is already registered.")
            self._handler = handler

    def unregister(self) -> None:
        with self._lock:
            self._handler = None

    def report(self, method: str, path: str, error: Exception) -> None:
        with self._lock:
            handler = self._handler
        if handler is not None:
            handler(method, path, error)


# Process-wide reporter used when a client is not given its own
DEFAULT_ERROR_REPORTER = ErrorReporter()


def set_api_error_handler(handler: APIErrorHandler) -> None:
    """Register the process-wide API error handler (once)."""
    DEFAULT_ERROR_REPORTER.register(handler)


def _is_local_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def resolve_api_host(domain: str) -> str:
    """Map a backend domain to the API host.

    ``example.com`` becomes ``api.example.com``. Localhost and IP addresses,
    with or without a port, are used as-is so tests can target local servers.
    """
    if _is_local_host(domain):
        return domain
    host, sep, port = domain.rpartition(":")
    if sep and port.isdigit() and _is_local_host(host):
        return domain
    return f"api.{domain}"


def normalize_proxy(address: str) -> str:
    """Accept a URL, hostname, or IP for the proxy; HTTP is assumed without a scheme."""
    if "://" not in address:
        return f"http://{address}"
    return address


class APIClient:
    """HTTP client for the backend API.

    Sends one authenticated request at a time per call and returns the
    decoded JSON body or raises a typed error. The underlying
    ``httpx.AsyncClient`` is created on first use and shared by all callers.
    Use as async context manager, or call ``aclose`` when done.

    Attributes:
        config: Transport settings
        credentials: Credentials attached to each request
        client_id: Process-stable identity sent with each request
    """

    def __init__(
        self,
        config: TransportConfig,
        credentials: Credentials,
        client_id: ClientID | None = None,
        error_reporter: ErrorReporter | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize API client.

        Args:
            config: Transport settings
            credentials: Resolved credentials
            client_id: Client identity (default: the process-wide one)
            error_reporter: Receives failed calls (default: the process-wide reporter)
            http_transport: Replacement httpx transport (tests)
        """
        self.config = config
        self.credentials = credentials
        self.client_id = client_id or get_client_id()
        self._error_reporter = error_reporter or DEFAULT_ERROR_REPORTER
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None
        self._init_lock = asyncio.Lock()

        scheme = "https"
        if config.test_only_disable_https:
            logger.warning("Using test backend without TLS.")
            scheme = "http"
        self.base_url = f"{scheme}://{resolve_api_host(config.domain)}"

    async def __aenter__(self) -> Self:
        await self._get_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Create the shared httpx client exactly once, even under concurrent first use."""
        if self._client is not None:
            return self._client
        async with self._init_lock:
            if self._client is None:
                self._client = self._create_client()
        return self._client

    def _create_client(self) -> httpx.AsyncClient:
        config = self.config
        verify = True
        if config.permit_invalid_certificate:
            logger.warning("Disabling TLS checking; sending traffic without verifying the identity of the backend.")
            verify = False
        if config.expected_server_name:
            logger.warning("Expecting TLS server name %r instead of the backend host.", config.expected_server_name)

        proxy: str | None = None
        if config.proxy:
            proxy = normalize_proxy(config.proxy)
            logger.debug("Using proxy %s", proxy)

        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(config.request_timeout),
            limits=httpx.Limits(
                max_keepalive_connections=config.max_idle_connections,
                keepalive_expiry=config.idle_connection_timeout,
            ),
            verify=verify,
            proxy=proxy,
            transport=self._http_transport,
        )

    def _build_headers(self) -> dict[str, str]:
        """Build request headers with identification and API-key authentication.

        Raises:
            ConfigurationError: If no usable credential is configured
        """
        self.credentials.require()

        headers: dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": user_agent(),
            CLI_GIT_VERSION_HEADER: GIT_VERSION,
            CLIENT_ID_HEADER: str(self.client_id),
        }
        if self.credentials.api_key:
            headers[API_KEY_HEADER] = self.credentials.api_key
            if self.credentials.environment:
                headers[ENVIRONMENT_HEADER] = self.credentials.environment
        return headers

    def _build_auth(self) -> httpx.BasicAuth | None:
        if self.credentials.api_key:
            return None
        key_id, key_secret = self.credentials.key_pair()
        return httpx.BasicAuth(key_id, key_secret)

    def _backoff(self, attempt: int) -> float:
        return min(self.config.retry_wait_min * (2 ** (attempt - 1)), self.config.retry_wait_max)

    @staticmethod
    def _is_retryable_status(status: int) -> bool:
        return status >= 500 and status not in NON_RETRYABLE_SERVER_ERRORS

    def _error_for_response(self, method: str, path: str, response: httpx.Response) -> HTTPError:
        details: dict[str, object] = {"method": method, "path": path}
        if response.status_code == 401:
            return AuthenticationError(response.content, credentials_sent=not self.credentials.is_empty(), details=details)
        logger.debug("Unexpected status %d for %s %s, body: %s", response.status_code, method, path, response.text)
        return HTTPError(response.status_code, response.content, details=details)

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | list[tuple[str, str]] | None = None,
        json: Any = None,
        idempotent: bool | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        """Send a request and decode the JSON response.

        Args:
            method: HTTP method
            path: API endpoint path (e.g., "/v1/services")
            params: Query parameters
            json: JSON-serializable body
            idempotent: Whether the call may be retried (default: True for GET only)
            timeout: Per-request timeout in seconds (default: config.request_timeout)
            max_attempts: Override for the total number of attempts

        Returns:
            Decoded JSON body ({} for an empty body)

        Raises:
            ConfigurationError: If credentials are missing (never sent)
            AuthenticationError: On 401 (never retried)
            HTTPError: On other non-2xx responses
            TransportError: If the request could not be completed
        """
        try:
            return await self._send(method, path, params, json, idempotent, timeout, max_attempts)
        except AgentError as e:
            self._error_reporter.report(method, path, e)
            raise

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | list[tuple[str, str]] | None,
        json: Any,
        idempotent: bool | None,
        timeout: float | None,
        max_attempts: int | None,
    ) -> Any:
        headers = self._build_headers()
        auth = self._build_auth()
        client = await self._get_client()

        if idempotent is None:
            idempotent = method.upper() == "GET"
        if max_attempts is None:
            max_attempts = 1 + self.config.max_retries if idempotent else 1

        extensions: dict[str, Any] = {}
        if self.config.expected_server_name:
            extensions["sni_hostname"] = self.config.expected_server_name

        request_timeout = httpx.Timeout(timeout if timeout is not None else self.config.request_timeout)
        details: dict[str, object] = {"method": method, "path": path}

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers=headers,
                    auth=auth if auth is not None else httpx.USE_CLIENT_DEFAULT,
                    timeout=request_timeout,
                    extensions=extensions,
                )
            except httpx.TransportError as e:
                if attempt < max_attempts:
                    delay = self._backoff(attempt)
                    logger.debug(
                        "%s %s failed (%s), retrying in %.1fs (%d/%d)",
                        method,
                        path,
                        type(e).__name__,
                        delay,
                        attempt,
                        max_attempts - 1,
                    )
                    await asyncio.sleep(delay)
                    continue
                details["attempts"] = attempt
                if isinstance(e, httpx.TimeoutException):
                    raise RequestTimeoutError(f"{method} {path} timed out", details) from e
                raise TransportError(f"{method} {path} failed after {attempt} attempt(s): {e}", details) from e

            if response.is_success:
                return self._decode(method, path, response)

            if self._is_retryable_status(response.status_code) and attempt < max_attempts:
                delay = self._backoff(attempt)
                logger.debug(
                    "%s %s got status %d, retrying in %.1fs (%d/%d)",
                    method,
                    path,
                    response.status_code,
                    delay,
                    attempt,
                    max_attempts - 1,
                )
                await asyncio.sleep(delay)
                continue

            raise self._error_for_response(method, path, response)

    @staticmethod
    def _decode(method: str, path: str, response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise HTTPError(
                response.status_code,
                response.content,
                message=f"Failed to decode response of {method} {path} as JSON.",
                details={"method": method, "path": path},
            ) from e

    async def get(
        self,
        path: str,
        params: dict[str, Any] | list[tuple[str, str]] | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        """Make a GET request (always retried on transient failures)."""
        return await self.request("GET", path, params=params, timeout=timeout, max_attempts=max_attempts)

    async def post(
        self,
        path: str,
        json: Any = None,
        idempotent: bool = False,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        """Make a POST request.

        Args:
            path: API endpoint path
            json: JSON body
            idempotent: True for endpoints documented as safe to retry
            timeout: Per-request timeout in seconds
            max_attempts: Override for the total number of attempts
        """
        return await self.request(
            "POST",
            path,
            json=json,
            idempotent=idempotent,
            timeout=timeout,
            max_attempts=max_attempts,
        )

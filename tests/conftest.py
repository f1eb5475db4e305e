"""Pytest configuration and shared fixtures for apisync tests.

This module provides common fixtures used across the unit tests.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest

from apisync.api.client import APIClient, ErrorReporter
from apisync.auth.credentials import Credentials
from apisync.config import TransportConfig
from apisync.ids import ClientID, ServiceID, TraceID
from apisync.models import CollectorEvent, Direction, EventKind

Handler = Callable[[httpx.Request], httpx.Response]

# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove APISYNC_* variables so the developer's environment cannot leak into tests."""
    for name in (
        "APISYNC_API_KEY",
        "APISYNC_API_KEY_ID",
        "APISYNC_API_KEY_SECRET",
        "APISYNC_ENV",
        "APISYNC_DOMAIN",
        "APISYNC_PROXY",
        "APISYNC_PERMIT_INVALID_CERTIFICATE",
        "APISYNC_EXPECTED_SERVER_NAME",
        "APISYNC_TEST_ONLY_DISABLE_HTTPS",
    ):
        monkeypatch.delenv(name, raising=False)


# ============================================================================
# Keyring Fixtures
# ============================================================================


@pytest.fixture
def mock_keyring() -> Generator[MagicMock, None, None]:
    """Create a mock keyring for testing credential storage.

    Yields:
        A mocked keyring module.
    """
    with patch("apisync.auth.credentials.keyring") as mock:
        mock.get_password.return_value = None
        yield mock


# ============================================================================
# Transport Fixtures
# ============================================================================


@pytest.fixture
def api_key_credentials() -> Credentials:
    return Credentials(api_key="test-api-key", environment="STAGE")


@pytest.fixture
def transport_config() -> TransportConfig:
    """Config with zero backoff so retry tests do not sleep."""
    return TransportConfig(domain="example.test", retry_wait_min=0.0, retry_wait_max=0.0)


@pytest.fixture
def make_client(
    transport_config: TransportConfig,
    api_key_credentials: Credentials,
) -> Callable[..., APIClient]:
    """Factory building an APIClient whose HTTP traffic goes to a handler function.

    Returns:
        ``make_client(handler, credentials=None, config=None)``
    """

    def factory(
        handler: Handler,
        credentials: Credentials | None = None,
        config: TransportConfig | None = None,
    ) -> APIClient:
        return APIClient(
            config or transport_config,
            credentials or api_key_credentials,
            client_id=ClientID.generate(),
            error_reporter=ErrorReporter(),
            http_transport=httpx.MockTransport(handler),
        )

    return factory


# ============================================================================
# Test Data Factories
# ============================================================================


def json_response(status_code: int, body: Any) -> httpx.Response:
    return httpx.Response(status_code, json=body)


def create_service_list(*names: str) -> tuple[list[dict[str, str]], dict[str, ServiceID]]:
    """Create a service listing response and the IDs it contains."""
    ids = {name: ServiceID.generate() for name in names}
    return [{"id": str(service_id), "name": name} for name, service_id in ids.items()], ids


def create_trace_list(*names: str) -> tuple[dict[str, Any], dict[str, TraceID]]:
    """Create a trace listing response and the IDs it contains."""
    ids = {name: TraceID.generate() for name in names}
    return {"sessions": [{"id": str(trace_id), "name": name} for name, trace_id in ids.items()]}, ids


BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def http_pair(
    seq: int,
    stream_id: uuid.UUID | None = None,
    host: str = "api.shop.test",
    path: str = "/v1/orders",
    method: str = "GET",
    status_code: int = 200,
    direction: Direction = Direction.INBOUND,
    headers: dict[str, str] | None = None,
    at: datetime = BASE_TIME,
) -> tuple[CollectorEvent, CollectorEvent]:
    """Create a request event and its matching response event."""
    stream_id = stream_id or uuid.UUID(int=1)
    request = CollectorEvent(
        kind=EventKind.HTTP_REQUEST,
        direction=direction,
        observation_time=at,
        final_packet_time=at + timedelta(milliseconds=5),
        src_ip="10.0.0.1",
        src_port=50000 + seq,
        dst_ip="10.0.0.2",
        dst_port=443,
        stream_id=stream_id,
        seq=seq,
        method=method,
        host=host,
        path=path,
        headers=headers or {},
    )
    response = CollectorEvent(
        kind=EventKind.HTTP_RESPONSE,
        direction=direction,
        observation_time=at + timedelta(milliseconds=25),
        src_ip="10.0.0.2",
        src_port=443,
        dst_ip="10.0.0.1",
        dst_port=50000 + seq,
        stream_id=stream_id,
        seq=seq,
        status_code=status_code,
        headers=headers or {},
    )
    return request, response

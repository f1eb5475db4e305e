"""Directory operations: services, daemon heartbeat and long polls.

These calls are not scoped to a single trace. The long-poll calls block
on the backend until it has something to report or the timeout elapses.
"""

from __future__ import annotations

import logging

from apisync.api.client import APIClient
from apisync.api.responses import parse_model, parse_models
from apisync.ids import ServiceID, TraceID
from apisync.models import ActiveTraceDiff, Service

logger = logging.getLogger(__name__)

# Server-side hold time for long polls, in seconds
LONG_POLL_TIMEOUT = 240.0


class DirectoryClient:
    """Client for service listing and daemon coordination.

    Attributes:
        client: Shared API client
    """

    def __init__(self, client: APIClient) -> None:
        self.client = client

    async def list_services(self) -> list[Service]:
        """List services visible to the configured credentials."""
        path = "/v1/services"
        data = await self.client.get(path)
        return parse_models(Service, data, path)

    async def create_service(self, name: str) -> Service:
        """Create a service.

        Args:
            name: Service name

        Returns:
            The created service
        """
        path = "/v1/services"
        data = await self.client.post(path, json={"name": name})
        return parse_model(Service, data, path)

    async def heartbeat(self, daemon_name: str) -> None:
        """Tell the backend that the named daemon is alive."""
        await self.client.post(
            "/v1/daemon/heartbeat",
            json={"daemon_name": daemon_name},
            idempotent=True,
        )

    async def long_poll_active_traces(
        self,
        daemon_name: str,
        service_id: ServiceID,
        active_trace_ids: list[TraceID],
        timeout: float = LONG_POLL_TIMEOUT,
    ) -> ActiveTraceDiff:
        """Wait until the backend's active trace set differs from ours.

        Args:
            daemon_name: Name the daemon registered under
            service_id: Service to watch
            active_trace_ids: Traces this daemon is currently collecting for
            timeout: How long the request may be held open, in seconds

        Returns:
            The difference; empty if the backend released the poll without a change
        """
        path = f"/v1/services/{service_id}/daemon"
        data = await self.client.post(
            path,
            json={
                "daemon_name": daemon_name,
                "active_trace_ids": [str(trace_id) for trace_id in active_trace_ids],
            },
            idempotent=True,
            timeout=timeout,
            max_attempts=1,
        )
        return parse_model(ActiveTraceDiff, data or {}, path)

    async def long_poll_trace_deactivation(
        self,
        daemon_name: str,
        service_id: ServiceID,
        trace_id: TraceID,
        timeout: float = LONG_POLL_TIMEOUT,
    ) -> None:
        """Return once the backend reports the trace as deactivated.

        Raises:
            RequestTimeoutError: If the trace is still active when the timeout elapses
        """
        await self.client.request(
            "GET",
            f"/v1/services/{service_id}/daemon/traces/{trace_id}/deactivation",
            params={"daemon_name": daemon_name},
            timeout=timeout,
            max_attempts=1,
        )

"""Name to identifier resolution with a short-lived cache.

Service and trace names are resolved by listing every resource the backend
knows and remembering all of them, so resolving several names in a row
costs one request. Entries are fresh for 30 seconds. Nothing is cached for
names that do not exist, and stale entries are never served, not even when
the backend is unreachable.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Awaitable, Callable, Hashable, Iterable

from apisync.api.directory import DirectoryClient
from apisync.api.sessions import SessionClient
from apisync.ids import ResourceID, ServiceID, TraceID
from apisync.models import (
    AuthenticationError,
    HTTPError,
    LookupFailedError,
    ResolutionNotFoundError,
    ResponseFormatError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY = 30.0
DEFAULT_CLEANUP_INTERVAL = 300.0

# Monotonic time source in seconds
Clock = Callable[[], float]


class TTLCache[K: Hashable, V]:
    """Map whose entries expire a fixed time after they were written.

    Expired entries are never returned. They are removed in a sweep that
    runs at most once per ``cleanup_interval``. Safe to share between
    threads; concurrent writes to a key keep the last one.

    Attributes:
        expiry: Seconds an entry stays fresh
        cleanup_interval: Minimum seconds between sweeps
    """

    def __init__(
        self,
        expiry: float = DEFAULT_EXPIRY,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Clock = time.monotonic,
    ) -> None:
        self.expiry = expiry
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._entries: dict[K, tuple[V, float]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def get(self, key: K) -> V | None:
        """Return the fresh value for a key, or None."""
        now = self._clock()
        with self._lock:
            self._maybe_cleanup(now)
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if now >= expires_at:
                return None
            return value

    def set(self, key: K, value: V) -> None:
        now = self._clock()
        with self._lock:
            self._maybe_cleanup(now)
            self._entries[key] = (value, now + self.expiry)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        """Number of stored entries, including expired ones not yet swept."""
        with self._lock:
            return len(self._entries)

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self.cleanup_interval:
            return
        self._last_cleanup = now
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))


def _normalize(name: str) -> str:
    return name.lower()


class IdentifierCache:
    """Resolves service and trace names to backend IDs.

    Names are matched case-insensitively. If the backend lists two
    resources whose names differ only in case, the one listed last wins.

    Attributes:
        directory: Client used to list services
    """

    def __init__(
        self,
        directory: DirectoryClient,
        session_client_factory: Callable[[ServiceID], SessionClient] | None = None,
        expiry: float = DEFAULT_EXPIRY,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Clock = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            directory: Client used to list services
            session_client_factory: Builds the session client for a service
                (default: a SessionClient sharing the directory's transport)
            expiry: Seconds an entry stays fresh
            cleanup_interval: Minimum seconds between sweeps of expired entries
            clock: Monotonic time source
        """
        self.directory = directory
        self._session_client_factory = session_client_factory or (
            lambda service_id: SessionClient(directory.client, service_id)
        )
        self._services: TTLCache[str, ServiceID] = TTLCache(expiry, cleanup_interval, clock)
        self._traces: TTLCache[tuple[ServiceID, str], TraceID] = TTLCache(expiry, cleanup_interval, clock)

    async def resolve_service(self, name: str) -> ServiceID:
        """Resolve a service name.

        Raises:
            ResolutionNotFoundError: If no service has this name
            LookupFailedError: If the backend could not be queried
        """
        key = _normalize(name)
        cached = self._services.get(key)
        if cached is not None:
            logger.debug("Cached service name %r is %s", name, cached)
            return cached

        services = await self._fetch("service", name, self.directory.list_services())
        self._populate(
            "service",
            ((_normalize(service.name), service.id) for service in services),
            self._services.set,
        )

        resolved = self._services.get(key)
        if resolved is None:
            raise ResolutionNotFoundError("service", name)
        logger.debug("Service name %r is %s", name, resolved)
        return resolved

    async def resolve_trace(self, service_id: ServiceID, name: str) -> TraceID:
        """Resolve a trace name within a service.

        Raises:
            ResolutionNotFoundError: If the service has no trace with this name
            LookupFailedError: If the backend could not be queried
        """
        key = (service_id, _normalize(name))
        cached = self._traces.get(key)
        if cached is not None:
            logger.debug("Cached trace name %r is %s", name, cached)
            return cached

        session_client = self._session_client_factory(service_id)
        sessions = await self._fetch("trace", name, session_client.list_sessions())
        self._populate(
            "trace",
            (((service_id, _normalize(session.name)), session.id) for session in sessions),
            self._traces.set,
        )

        resolved = self._traces.get(key)
        if resolved is None:
            raise ResolutionNotFoundError("trace", name, {"service_id": str(service_id)})
        logger.debug("Trace name %r is %s", name, resolved)
        return resolved

    async def find_trace(self, service_id: ServiceID, name: str) -> TraceID | None:
        """Like ``resolve_trace`` but returns None when the trace does not exist."""
        try:
            return await self.resolve_trace(service_id, name)
        except ResolutionNotFoundError:
            return None

    def remember_trace(self, service_id: ServiceID, name: str, trace_id: TraceID) -> None:
        """Record a trace this process just created."""
        self._traces.set((service_id, _normalize(name)), trace_id)

    @staticmethod
    async def _fetch[T](kind: str, name: str, listing: Awaitable[list[T]]) -> list[T]:
        try:
            return await listing
        except AuthenticationError:
            raise
        except (TransportError, HTTPError, ResponseFormatError) as e:
            raise LookupFailedError(
                f"failed to list {kind}s while resolving {name!r}: {e.message}",
                {**e.details, "kind": kind, "name": name},
            ) from e

    @staticmethod
    def _populate[K: Hashable, I: ResourceID](
        kind: str,
        entries: Iterable[tuple[K, I]],
        store: Callable[[K, I], None],
    ) -> None:
        seen: dict[K, I] = {}
        for key, resource_id in entries:
            if resource_id.is_zero():
                continue
            previous = seen.get(key)
            if previous is not None and previous != resource_id:
                logger.debug("Duplicate %s name %r: %s replaces %s", kind, key, resource_id, previous)
            seen[key] = resource_id
            store(key, resource_id)

"""Create-or-append trace synchronization.

Decides which trace a stream of events is written to, then pushes the
events through a collector pipeline that filters, counts and uploads them.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field

from apisync.api.directory import DirectoryClient
from apisync.api.sessions import SessionClient
from apisync.cache import IdentifierCache
from apisync.collector import BackendCollector, Collector, CollectorChain, PacketCounter
from apisync.ids import ServiceID, TraceID
from apisync.models import (
    APISpecReference,
    CollectorEvent,
    ConfigurationError,
    Destination,
    Direction,
    EventKind,
    HTTPError,
    ObjectType,
    PreconditionError,
    ResolutionNotFoundError,
    TraceSession,
    is_reserved_tag_key,
    random_trace_name,
    tags_match,
)

logger = logging.getLogger(__name__)

SinkFactory = Callable[[SessionClient, TraceID], Collector]


@dataclass
class ResolvedTrace:
    """The trace a run writes to.

    Attributes:
        service_id: Owning service
        trace_id: Target trace
        name: Trace name
        created: Whether this run created the trace
    """

    service_id: ServiceID
    trace_id: TraceID
    name: str
    created: bool


@dataclass
class UploadSummary:
    """Event counts of one synchronization run, per (direction, kind).

    For every bucket, ``submitted + filtered == input``. Events the sink
    accepts but cannot turn into a report count as filtered.
    """

    trace: ResolvedTrace
    input: PacketCounter = field(default_factory=PacketCounter)
    submitted: PacketCounter = field(default_factory=PacketCounter)
    filtered: PacketCounter = field(default_factory=PacketCounter)

    @property
    def events_input(self) -> int:
        return self.input.total()

    @property
    def events_submitted(self) -> int:
        return self.submitted.total()

    @property
    def events_filtered(self) -> int:
        return self.filtered.total()

    def buckets(self) -> list[tuple[Direction, EventKind, int, int, int]]:
        """Rows of (direction, kind, input, submitted, filtered) for reporting."""
        keys = sorted(self.input.snapshot(), key=lambda bucket: (bucket[0].value, bucket[1].value))
        return [
            (
                direction,
                kind,
                self.input.get(direction, kind),
                self.submitted.get(direction, kind),
                self.filtered.get(direction, kind),
            )
            for direction, kind in keys
        ]


def warn_reserved_tags(tags: dict[str, str]) -> None:
    """Log a warning for each tag key owned by the backend."""
    for key in sorted(tags):
        if is_reserved_tag_key(key):
            logger.warning("Tag %r is reserved; the backend may overwrite its value.", key)


async def _iterate(
    events: Iterable[CollectorEvent] | AsyncIterable[CollectorEvent],
) -> AsyncIterator[CollectorEvent]:
    if isinstance(events, AsyncIterable):
        async for event in events:
            yield event
    else:
        for event in events:
            yield event


class SessionSynchronizer:
    """Owns the choice of target trace and runs the upload pipeline.

    Attributes:
        directory: Client for service operations
        cache: Name resolution cache
    """

    def __init__(
        self,
        directory: DirectoryClient,
        cache: IdentifierCache | None = None,
        session_client_factory: Callable[[ServiceID], SessionClient] | None = None,
        sink_factory: SinkFactory | None = None,
    ) -> None:
        """Initialize the synchronizer.

        Args:
            directory: Client for service operations
            cache: Name resolution cache (default: a new one over ``directory``)
            session_client_factory: Builds the session client for a service
            sink_factory: Builds the final pipeline stage (default: BackendCollector)
        """
        self.directory = directory
        self._session_client_factory = session_client_factory or (
            lambda service_id: SessionClient(directory.client, service_id)
        )
        self.cache = cache or IdentifierCache(directory, self._session_client_factory)
        self._sink_factory = sink_factory or BackendCollector

    def session_client(self, service_id: ServiceID) -> SessionClient:
        return self._session_client_factory(service_id)

    async def resolve_trace(
        self,
        destination: Destination,
        append: bool = False,
        tags: dict[str, str] | None = None,
        base_spec_ref: APISpecReference | None = None,
    ) -> ResolvedTrace:
        """Find or create the trace named by a destination.

        Args:
            destination: Service and trace name; an empty name means a fresh random name
            append: Whether adding to an existing trace is intended
            tags: Tags for a newly created trace
            base_spec_ref: Spec a newly created trace extends

        Returns:
            The trace to write to

        Raises:
            ConfigurationError: If the destination is not a trace
            PreconditionError: If the trace exists and ``append`` is False
            ResolutionNotFoundError: If the service does not exist
            LookupFailedError: If names could not be resolved
        """
        if destination.object_type is not ObjectType.TRACE:
            raise ConfigurationError(
                f"{destination} is not a trace; events can only be written to traces.",
                {"destination": str(destination)},
            )

        tags = tags or {}
        warn_reserved_tags(tags)

        service_id = await self.cache.resolve_service(destination.service_name)
        name = destination.object_name or random_trace_name()

        if destination.object_name:
            existing = await self.cache.find_trace(service_id, name)
            if existing is not None:
                return self._use_existing(service_id, name, existing, append)
            if append:
                logger.warning("Trace %r does not exist; creating it.", name)

        session_client = self.session_client(service_id)
        try:
            trace_id = await session_client.create_session(name, tags=tags, base_spec_ref=base_spec_ref)
        except HTTPError as e:
            if e.status_code != 409:
                raise
            logger.debug("Trace %r was created concurrently", name)
            try:
                existing = await session_client.get_trace_id_by_name(name)
            except ResolutionNotFoundError as lookup_error:
                raise PreconditionError(
                    f"Trace {name!r} was reported as existing but cannot be found.",
                    {"service_id": str(service_id), "trace_name": name},
                ) from lookup_error
            self.cache.remember_trace(service_id, name, existing)
            return self._use_existing(service_id, name, existing, append)

        self.cache.remember_trace(service_id, name, trace_id)
        logger.info("Created trace %s", Destination(service_name=destination.service_name, object_name=name))
        return ResolvedTrace(service_id=service_id, trace_id=trace_id, name=name, created=True)

    @staticmethod
    def _use_existing(service_id: ServiceID, name: str, trace_id: TraceID, append: bool) -> ResolvedTrace:
        if not append:
            raise PreconditionError(
                f"Trace {name!r} already exists. Use --append to add events to it.",
                {"service_id": str(service_id), "trace_name": name, "trace_id": str(trace_id)},
            )
        logger.debug("Appending to existing trace %r (%s)", name, trace_id)
        return ResolvedTrace(service_id=service_id, trace_id=trace_id, name=name, created=False)

    def build_pipeline(
        self,
        sink: Collector,
        summary: UploadSummary,
        include_trackers: bool = False,
        sample_rate: float = 1.0,
        path_exclusions: list[str | re.Pattern[str]] | None = None,
        host_exclusions: list[str | re.Pattern[str]] | None = None,
    ) -> tuple[Collector, CollectorChain]:
        """Assemble input counting, filters and submitted counting in front of the sink."""
        chain = CollectorChain().count(summary.input).filter_user_traffic()
        if not include_trackers:
            chain.filter_trackers()
        chain.exclude_paths(path_exclusions or []).exclude_hosts(host_exclusions or [])
        chain.sample(sample_rate).count(summary.submitted)
        return chain.build(sink), chain

    async def sync(
        self,
        destination: Destination,
        events: Iterable[CollectorEvent] | AsyncIterable[CollectorEvent],
        append: bool = False,
        tags: dict[str, str] | None = None,
        include_trackers: bool = False,
        sample_rate: float = 1.0,
        path_exclusions: list[str | re.Pattern[str]] | None = None,
        host_exclusions: list[str | re.Pattern[str]] | None = None,
    ) -> UploadSummary:
        """Write events to the destination trace.

        The trace is resolved (and created if needed) before any event is
        submitted, so a precondition failure submits nothing.

        Returns:
            Counts of input, submitted and filtered events

        Raises:
            PreconditionError: If the trace exists and ``append`` is False
            UploadError: If any report batch could not be uploaded
        """
        trace = await self.resolve_trace(destination, append=append, tags=tags)
        summary = UploadSummary(trace=trace)

        sink = self._sink_factory(self.session_client(trace.service_id), trace.trace_id)
        head, chain = self.build_pipeline(
            sink,
            summary,
            include_trackers=include_trackers,
            sample_rate=sample_rate,
            path_exclusions=path_exclusions,
            host_exclusions=host_exclusions,
        )

        try:
            async for event in _iterate(events):
                await head.process(event)
        finally:
            summary.filtered = chain.dropped()
            summary.submitted = summary.submitted - chain.sink_dropped()
            await head.close()

        logger.info(
            "Submitted %d of %d events to trace %r (%d filtered)",
            summary.events_submitted,
            summary.events_input,
            trace.name,
            summary.events_filtered,
        )
        return summary

    async def find_latest_trace_by_tags(self, service_name: str, tags: dict[str, str]) -> Destination:
        """Pick the most recently created trace carrying the given tag.

        Returns:
            Destination of the matching trace, or one with an empty name
            (meaning "create a new trace") if none matches

        Raises:
            ConfigurationError: Unless exactly one tag is given
        """
        if not tags:
            raise ConfigurationError("A tag to match is required.")
        if len(tags) > 1:
            raise ConfigurationError("Matching traces by tag supports a single tag only.", {"tags": tags})

        service_id = await self.cache.resolve_service(service_name)
        sessions = await self.session_client(service_id).list_sessions(tags)
        sessions = [session for session in sessions if tags_match(session.tags, tags)]
        logger.debug("Found %d traces, filtering for most recent match.", len(sessions))

        latest: TraceSession | None = None
        for session in sessions:
            if latest is None or _created_after(session, latest):
                latest = session

        if latest is None:
            logger.info("No traces matching specified tag")
            return Destination(service_name=service_name)
        destination = Destination(service_name=service_name, object_name=latest.name)
        logger.info("Trace %s matches tag", destination)
        return destination


def _created_after(candidate: TraceSession, current: TraceSession) -> bool:
    if candidate.creation_time is None:
        return False
    if current.creation_time is None:
        return True
    return candidate.creation_time > current.creation_time

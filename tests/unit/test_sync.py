"""Unit tests for SessionSynchronizer."""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import http_pair

from apisync.collector import BackendCollector, Collector
from apisync.ids import ServiceID, TraceID
from apisync.models import (
    CollectorEvent,
    ConfigurationError,
    Destination,
    Direction,
    EventKind,
    HTTPError,
    ObjectType,
    PreconditionError,
    ResolutionNotFoundError,
    Service,
    TraceSession,
)
from apisync.sync import SessionSynchronizer, UploadSummary, warn_reserved_tags


class RecordingCollector(Collector):
    """Sink that keeps everything it receives."""

    def __init__(self, session_client: object = None, trace_id: TraceID | None = None) -> None:
        self.trace_id = trace_id
        self.events: list[CollectorEvent] = []
        self.closed = False

    async def process(self, event: CollectorEvent) -> None:
        self.events.append(event)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def service_id() -> ServiceID:
    return ServiceID.generate()


@pytest.fixture
def directory(service_id: ServiceID) -> MagicMock:
    mock = MagicMock()
    mock.list_services = AsyncMock(return_value=[Service(id=service_id, name="checkout")])
    return mock


@pytest.fixture
def session_client() -> MagicMock:
    mock = MagicMock()
    mock.list_sessions = AsyncMock(return_value=[])
    mock.create_session = AsyncMock(side_effect=lambda name, **kwargs: TraceID.generate())
    mock.get_trace_id_by_name = AsyncMock()
    return mock


@pytest.fixture
def sinks() -> list[RecordingCollector]:
    return []


@pytest.fixture
def synchronizer(
    directory: MagicMock, session_client: MagicMock, sinks: list[RecordingCollector]
) -> SessionSynchronizer:
    def sink_factory(client: object, trace_id: TraceID) -> Collector:
        sink = RecordingCollector(client, trace_id)
        sinks.append(sink)
        return sink

    return SessionSynchronizer(
        directory,
        session_client_factory=lambda service_id: session_client,
        sink_factory=sink_factory,
    )


def user_events(count: int) -> list[CollectorEvent]:
    events: list[CollectorEvent] = []
    for seq in range(count):
        events.extend(http_pair(seq))
    return events


class TestResolveTrace:
    """Tests for create-or-append decisions."""

    @pytest.mark.asyncio
    async def test_existing_trace_without_append_fails(
        self,
        synchronizer: SessionSynchronizer,
        session_client: MagicMock,
        sinks: list[RecordingCollector],
    ) -> None:
        """Test that nothing is submitted when the trace already exists."""
        session_client.list_sessions.return_value = [TraceSession(id=TraceID.generate(), name="nightly-run")]

        with pytest.raises(PreconditionError) as exc_info:
            await synchronizer.sync(Destination(service_name="checkout", object_name="nightly-run"), user_events(3))

        assert "--append" in exc_info.value.message
        assert sinks == []
        session_client.create_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_existing_trace_with_append(
        self, synchronizer: SessionSynchronizer, session_client: MagicMock, service_id: ServiceID
    ) -> None:
        existing = TraceID.generate()
        session_client.list_sessions.return_value = [TraceSession(id=existing, name="Nightly-Run")]

        trace = await synchronizer.resolve_trace(
            Destination(service_name="checkout", object_name="nightly-run"), append=True
        )

        assert trace.trace_id == existing
        assert trace.service_id == service_id
        assert trace.created is False

    @pytest.mark.asyncio
    async def test_append_to_missing_trace_creates_it(
        self,
        synchronizer: SessionSynchronizer,
        session_client: MagicMock,
        sinks: list[RecordingCollector],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test the nightly-run flow: append to a trace that does not exist yet."""
        with caplog.at_level(logging.WARNING, logger="apisync.sync"):
            summary = await synchronizer.sync(
                Destination(service_name="checkout", object_name="nightly-run"),
                user_events(5),
                append=True,
                tags={"branch": "main"},
            )

        assert "does not exist; creating it" in caplog.text
        assert summary.trace.created is True
        assert summary.trace.name == "nightly-run"
        assert summary.events_input == 10
        assert summary.events_submitted == 10
        assert summary.events_filtered == 0
        session_client.create_session.assert_awaited_once_with(
            "nightly-run", tags={"branch": "main"}, base_spec_ref=None
        )
        [sink] = sinks
        assert sink.trace_id == summary.trace.trace_id
        assert len(sink.events) == 10
        assert sink.closed

    @pytest.mark.asyncio
    async def test_created_trace_is_remembered(
        self, synchronizer: SessionSynchronizer, session_client: MagicMock, service_id: ServiceID
    ) -> None:
        trace = await synchronizer.resolve_trace(Destination(service_name="checkout", object_name="fresh"))

        assert await synchronizer.cache.find_trace(service_id, "fresh") == trace.trace_id

    @pytest.mark.asyncio
    async def test_empty_name_generates_random_name(
        self, synchronizer: SessionSynchronizer, session_client: MagicMock
    ) -> None:
        trace = await synchronizer.resolve_trace(Destination(service_name="checkout"))

        assert trace.name
        assert len(trace.name) <= 32
        assert trace.created is True
        session_client.list_sessions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_conflict_on_create_appends(
        self, synchronizer: SessionSynchronizer, session_client: MagicMock
    ) -> None:
        """Test that a trace created concurrently is used when appending."""
        winner = TraceID.generate()
        session_client.create_session.side_effect = HTTPError(409, b"")
        session_client.get_trace_id_by_name.return_value = winner

        trace = await synchronizer.resolve_trace(
            Destination(service_name="checkout", object_name="nightly-run"), append=True
        )

        assert trace.trace_id == winner
        assert trace.created is False

    @pytest.mark.asyncio
    async def test_conflict_on_create_without_append_fails(
        self, synchronizer: SessionSynchronizer, session_client: MagicMock
    ) -> None:
        session_client.create_session.side_effect = HTTPError(409, b"")
        session_client.get_trace_id_by_name.return_value = TraceID.generate()

        with pytest.raises(PreconditionError):
            await synchronizer.resolve_trace(Destination(service_name="checkout", object_name="nightly-run"))

    @pytest.mark.asyncio
    async def test_conflict_but_lookup_misses(
        self, synchronizer: SessionSynchronizer, session_client: MagicMock
    ) -> None:
        session_client.create_session.side_effect = HTTPError(409, b"")
        session_client.get_trace_id_by_name.side_effect = ResolutionNotFoundError("trace", "nightly-run")

        with pytest.raises(PreconditionError):
            await synchronizer.resolve_trace(
                Destination(service_name="checkout", object_name="nightly-run"), append=True
            )

    @pytest.mark.asyncio
    async def test_other_create_errors_propagate(
        self, synchronizer: SessionSynchronizer, session_client: MagicMock
    ) -> None:
        session_client.create_session.side_effect = HTTPError(400, b"bad name")

        with pytest.raises(HTTPError) as exc_info:
            await synchronizer.resolve_trace(Destination(service_name="checkout", object_name="bad name"))

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_service(self, synchronizer: SessionSynchronizer) -> None:
        with pytest.raises(ResolutionNotFoundError) as exc_info:
            await synchronizer.resolve_trace(Destination(service_name="inventory", object_name="x"))

        assert exc_info.value.kind == "service"

    @pytest.mark.asyncio
    async def test_spec_destination_rejected(self, synchronizer: SessionSynchronizer) -> None:
        with pytest.raises(ConfigurationError):
            await synchronizer.resolve_trace(
                Destination(service_name="checkout", object_type=ObjectType.SPEC, object_name="v1")
            )


class TestSync:
    """Tests for the upload pipeline."""

    @pytest.mark.asyncio
    async def test_filters_are_counted(self, synchronizer: SessionSynchronizer) -> None:
        events = [
            *http_pair(1),
            *http_pair(2, host="www.google-analytics.com"),
            *http_pair(3, path="/healthz"),
            *http_pair(4, headers={"x-apisync-request-id": "abc"}),
        ]

        summary = await synchronizer.sync(
            Destination(service_name="checkout"), events, path_exclusions=[r"^/health"]
        )

        assert summary.events_input == 8
        assert summary.events_submitted == 2
        assert summary.events_filtered == 6
        for direction, kind, seen, submitted, filtered in summary.buckets():
            assert seen == submitted + filtered
            assert direction is Direction.INBOUND
            assert kind in (EventKind.HTTP_REQUEST, EventKind.HTTP_RESPONSE)

    @pytest.mark.asyncio
    async def test_unreportable_events_count_as_filtered(
        self, directory: MagicMock, session_client: MagicMock
    ) -> None:
        """Test that events the upload sink cannot report are not counted as submitted."""
        session_client.report_witnesses = AsyncMock(return_value=None)
        synchronizer = SessionSynchronizer(
            directory,
            session_client_factory=lambda service_id: session_client,
            sink_factory=BackendCollector,
        )
        events = [*http_pair(1), CollectorEvent(kind=EventKind.UNPARSED)]

        summary = await synchronizer.sync(Destination(service_name="checkout"), events)

        assert summary.events_input == 3
        assert summary.events_submitted == 2
        assert summary.events_filtered == 1
        assert summary.filtered.get(Direction.INBOUND, EventKind.UNPARSED) == 1
        assert summary.submitted.get(Direction.INBOUND, EventKind.UNPARSED) == 0
        [call] = session_client.report_witnesses.await_args_list
        assert len(call.args[1].witnesses) == 1

    @pytest.mark.asyncio
    async def test_include_trackers(self, synchronizer: SessionSynchronizer) -> None:
        events = list(http_pair(1, host="www.google-analytics.com"))

        summary = await synchronizer.sync(Destination(service_name="checkout"), events, include_trackers=True)

        assert summary.events_submitted == 2

    @pytest.mark.asyncio
    async def test_accepts_async_iterables(self, synchronizer: SessionSynchronizer) -> None:
        async def stream() -> AsyncIterator[CollectorEvent]:
            for seq in range(3):
                for event in http_pair(seq, stream_id=uuid.uuid4()):
                    yield event

        summary = await synchronizer.sync(Destination(service_name="checkout"), stream())

        assert summary.events_submitted == 6

    @pytest.mark.asyncio
    async def test_sink_closed_when_source_fails(
        self, synchronizer: SessionSynchronizer, sinks: list[RecordingCollector]
    ) -> None:
        async def broken() -> AsyncIterator[CollectorEvent]:
            yield http_pair(1)[0]
            raise OSError("capture device went away")

        with pytest.raises(OSError):
            await synchronizer.sync(Destination(service_name="checkout"), broken())

        assert sinks[0].closed
        assert len(sinks[0].events) == 1


class TestReservedTags:
    """Tests for reserved tag warnings."""

    def test_warns_for_reserved_keys(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="apisync.sync"):
            warn_reserved_tags({"x-apisync-source": "ci", "source": "ci", "branch": "main"})

        assert "x-apisync-source" in caplog.text
        assert "'source'" in caplog.text
        assert "branch" not in caplog.text


class TestFindLatestTraceByTags:
    """Tests for find_latest_trace_by_tags."""

    @pytest.mark.asyncio
    async def test_picks_most_recent_match(
        self, synchronizer: SessionSynchronizer, session_client: MagicMock
    ) -> None:
        session_client.list_sessions.return_value = [
            TraceSession(
                id=TraceID.generate(), name="old", tags={"run": "1"}, creation_time=datetime(2024, 1, 1, tzinfo=UTC)
            ),
            TraceSession(
                id=TraceID.generate(), name="new", tags={"run": "1"}, creation_time=datetime(2024, 2, 1, tzinfo=UTC)
            ),
            TraceSession(
                id=TraceID.generate(), name="other", tags={"run": "2"}, creation_time=datetime(2024, 3, 1, tzinfo=UTC)
            ),
        ]

        destination = await synchronizer.find_latest_trace_by_tags("checkout", {"run": "1"})

        assert destination.object_name == "new"
        assert str(destination) == "apisync://checkout:trace:new"
        session_client.list_sessions.assert_awaited_once_with({"run": "1"})

    @pytest.mark.asyncio
    async def test_no_match_returns_empty_name(
        self, synchronizer: SessionSynchronizer, session_client: MagicMock
    ) -> None:
        session_client.list_sessions.return_value = [TraceSession(id=TraceID.generate(), name="x", tags={})]

        destination = await synchronizer.find_latest_trace_by_tags("checkout", {"run": "1"})

        assert destination.object_name == ""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tags", [{}, {"a": "1", "b": "2"}])
    async def test_requires_exactly_one_tag(self, synchronizer: SessionSynchronizer, tags: dict[str, str]) -> None:
        with pytest.raises(ConfigurationError):
            await synchronizer.find_latest_trace_by_tags("checkout", tags)


class TestUploadSummary:
    """Tests for UploadSummary."""

    def test_buckets_sorted_and_complete(self) -> None:
        summary = UploadSummary(trace=MagicMock())
        request, response = http_pair(1)
        outbound, _ = http_pair(2, direction=Direction.OUTBOUND)
        for event in (request, response, outbound):
            summary.input.update(event)
        summary.submitted.update(request)
        summary.filtered.update(response)

        rows = summary.buckets()

        assert [(d, k) for d, k, *_ in rows] == [
            (Direction.INBOUND, EventKind.HTTP_REQUEST),
            (Direction.INBOUND, EventKind.HTTP_RESPONSE),
            (Direction.OUTBOUND, EventKind.HTTP_REQUEST),
        ]
        assert rows[0][2:] == (1, 1, 0)
        assert rows[2][2:] == (1, 0, 0)

"""Unit tests for collector stages and the chain builder."""

from __future__ import annotations

import uuid

import pytest
from conftest import http_pair

from apisync.collector import (
    Collector,
    CollectorChain,
    HostExclusionCollector,
    PacketCountCollector,
    PacketCounter,
    PathExclusionCollector,
    SamplingCollector,
    TrackerFilterCollector,
    UserTrafficCollector,
)
from apisync.ids import ConnectionID
from apisync.models import CollectorEvent, Direction, EventKind


class RecordingCollector(Collector):
    """Sink that keeps everything it receives."""

    def __init__(self) -> None:
        self.events: list[CollectorEvent] = []
        self.closed = False

    async def process(self, event: CollectorEvent) -> None:
        self.events.append(event)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def sink() -> RecordingCollector:
    return RecordingCollector()


async def feed(head: Collector, events: list[CollectorEvent]) -> None:
    for event in events:
        await head.process(event)


def tcp_event() -> CollectorEvent:
    return CollectorEvent(kind=EventKind.TCP_CONNECTION, connection_id=ConnectionID.generate())


class TestPacketCounter:
    """Tests for PacketCounter."""

    def test_counts_by_direction_and_kind(self) -> None:
        counter = PacketCounter()
        request, response = http_pair(1)
        outbound, _ = http_pair(2, direction=Direction.OUTBOUND)
        for event in (request, response, outbound):
            counter.update(event)

        assert counter.get(Direction.INBOUND, EventKind.HTTP_REQUEST) == 1
        assert counter.get(Direction.INBOUND, EventKind.HTTP_RESPONSE) == 1
        assert counter.get(Direction.OUTBOUND, EventKind.HTTP_REQUEST) == 1
        assert counter.get(Direction.OUTBOUND, EventKind.HTTP_RESPONSE) == 0
        assert counter.total() == 3

    def test_add_merges(self) -> None:
        a = PacketCounter()
        b = PacketCounter()
        request, response = http_pair(1)
        a.update(request)
        b.update(request)
        b.update(response)

        merged = a + b
        assert merged.get(Direction.INBOUND, EventKind.HTTP_REQUEST) == 2
        assert merged.total() == 3
        assert a.total() == 1

    def test_sub_removes_counts(self) -> None:
        a = PacketCounter()
        b = PacketCounter()
        request, response = http_pair(1)
        a.update(request)
        a.update(response)
        b.update(response)

        remaining = a - b
        assert remaining.get(Direction.INBOUND, EventKind.HTTP_RESPONSE) == 0
        assert remaining.total() == 1
        assert a.total() == 2

    @pytest.mark.asyncio
    async def test_count_collector_forwards_unchanged(self, sink: RecordingCollector) -> None:
        counter = PacketCounter()
        stage = PacketCountCollector(sink, counter)
        events = [*http_pair(1), tcp_event()]

        await feed(stage, events)
        await stage.close()

        assert sink.events == events
        assert counter.total() == 3
        assert sink.closed


class TestTrackerFilter:
    """Tests for TrackerFilterCollector."""

    @pytest.mark.asyncio
    async def test_drops_tracker_request_and_its_response(self, sink: RecordingCollector) -> None:
        stage = TrackerFilterCollector(sink)
        tracker = http_pair(1, host="www.google-analytics.com")
        kept = http_pair(2)

        await feed(stage, [tracker[0], kept[0], tracker[1], kept[1]])

        assert sink.events == [kept[0], kept[1]]
        assert stage.dropped.get(Direction.INBOUND, EventKind.HTTP_REQUEST) == 1
        assert stage.dropped.get(Direction.INBOUND, EventKind.HTTP_RESPONSE) == 1

    @pytest.mark.asyncio
    async def test_orphan_response_forwarded(self, sink: RecordingCollector) -> None:
        stage = TrackerFilterCollector(sink)
        _, response = http_pair(1)

        await stage.process(response)

        assert sink.events == [response]

    @pytest.mark.asyncio
    async def test_non_http_events_pass(self, sink: RecordingCollector) -> None:
        stage = TrackerFilterCollector(sink)
        event = tcp_event()

        await stage.process(event)

        assert sink.events == [event]


class TestExclusionFilters:
    """Tests for path and host exclusion."""

    @pytest.mark.asyncio
    async def test_path_exclusion(self, sink: RecordingCollector) -> None:
        stage = PathExclusionCollector(sink, [r"^/health", r"\.png$"])
        health = http_pair(1, path="/healthz")
        image = http_pair(2, path="/static/logo.png")
        kept = http_pair(3, path="/v1/orders")

        await feed(stage, [*health, *image, *kept])

        assert sink.events == list(kept)
        assert stage.dropped.total() == 4

    @pytest.mark.asyncio
    async def test_host_exclusion(self, sink: RecordingCollector) -> None:
        stage = HostExclusionCollector(sink, [r"internal\.example$"])
        internal = http_pair(1, host="metrics.internal.example")
        kept = http_pair(2, host="api.shop.test")

        await feed(stage, [*internal, *kept])

        assert sink.events == list(kept)


class TestUserTrafficFilter:
    """Tests for UserTrafficCollector."""

    @pytest.mark.asyncio
    async def test_drops_agent_traffic(self, sink: RecordingCollector) -> None:
        stage = UserTrafficCollector(sink)
        agent = http_pair(1, headers={"X-Apisync-Cli-Git-Version": "abc123"})
        user = http_pair(2)

        await feed(stage, [*agent, *user])

        assert sink.events == list(user)
        assert stage.dropped.total() == 2


class TestSamplingCollector:
    """Tests for SamplingCollector."""

    @pytest.mark.parametrize("rate", [-0.1, 1.5])
    def test_rejects_invalid_rate(self, sink: RecordingCollector, rate: float) -> None:
        with pytest.raises(ValueError):
            SamplingCollector(sink, rate)

    @pytest.mark.asyncio
    async def test_rate_zero_drops_everything(self, sink: RecordingCollector) -> None:
        stage = SamplingCollector(sink, 0.0)

        await feed(stage, [*http_pair(1), *http_pair(2)])

        assert sink.events == []
        assert stage.dropped.total() == 4

    @pytest.mark.asyncio
    async def test_pairs_kept_or_dropped_together(self, sink: RecordingCollector) -> None:
        """Test that request and response always share the sampling decision."""
        stage = SamplingCollector(sink, 0.5)
        events = []
        for seq in range(200):
            events.extend(http_pair(seq, stream_id=uuid.UUID(int=seq + 7)))

        await feed(stage, events)

        kept_requests = {e.witness_id for e in sink.events if e.kind is EventKind.HTTP_REQUEST}
        kept_responses = {e.witness_id for e in sink.events if e.kind is EventKind.HTTP_RESPONSE}
        assert kept_requests == kept_responses
        # Deterministic hash; roughly half survive
        assert 40 < len(kept_requests) < 160

    @pytest.mark.asyncio
    async def test_decision_is_deterministic(self) -> None:
        first = RecordingCollector()
        second = RecordingCollector()
        events = [event for seq in range(50) for event in http_pair(seq)]

        await feed(SamplingCollector(first, 0.3), events)
        await feed(SamplingCollector(second, 0.3), events)

        assert first.events == second.events


class TestCollectorChain:
    """Tests for CollectorChain."""

    @pytest.mark.asyncio
    async def test_first_added_stage_sees_events_first(self, sink: RecordingCollector) -> None:
        order: list[str] = []

        class Tag(Collector):
            def __init__(self, name: str, downstream: Collector) -> None:
                self.name = name
                self.downstream = downstream

            async def process(self, event: CollectorEvent) -> None:
                order.append(self.name)
                await self.downstream.process(event)

            async def close(self) -> None:
                await self.downstream.close()

        head = (
            CollectorChain()
            .add(lambda downstream: Tag("a", downstream))
            .add(lambda downstream: Tag("b", downstream))
            .build(sink)
        )
        request, _ = http_pair(1)
        await head.process(request)

        assert order == ["a", "b"]
        assert sink.events == [request]

    @pytest.mark.asyncio
    async def test_close_reaches_sink(self, sink: RecordingCollector) -> None:
        head = CollectorChain().filter_trackers().filter_user_traffic().build(sink)

        await head.close()

        assert sink.closed

    def test_full_rate_and_empty_patterns_add_no_stage(self, sink: RecordingCollector) -> None:
        chain = CollectorChain().sample(1.0).exclude_paths([]).exclude_hosts([])

        assert chain.build(sink) is sink
        assert chain.filters == []

    @pytest.mark.asyncio
    async def test_counts_balance(self, sink: RecordingCollector) -> None:
        """Test that input equals submitted plus filtered for every bucket."""
        seen = PacketCounter()
        submitted = PacketCounter()
        chain = (
            CollectorChain()
            .count(seen)
            .filter_user_traffic()
            .filter_trackers()
            .exclude_paths([r"^/health"])
            .sample(0.5)
            .count(submitted)
        )
        head = chain.build(sink)

        events: list[CollectorEvent] = []
        for seq in range(60):
            host = "www.google-analytics.com" if seq % 5 == 0 else "api.shop.test"
            path = "/health" if seq % 7 == 0 else "/v1/orders"
            events.extend(http_pair(seq, stream_id=uuid.UUID(int=1000 + seq), host=host, path=path))
        events.append(tcp_event())

        await feed(head, events)
        await head.close()

        filtered = chain.dropped()
        assert seen.total() == len(events)
        assert submitted.total() == len(sink.events)
        for direction in Direction:
            for kind in EventKind:
                assert seen.get(direction, kind) == submitted.get(direction, kind) + filtered.get(direction, kind)
        # Survivors reach the sink in input order
        positions = [events.index(event) for event in sink.events]
        assert positions == sorted(positions)
        assert len(set(positions)) == len(positions)
        for event in sink.events:
            assert event.host != "www.google-analytics.com"
            assert event.path != "/health"

    @pytest.mark.asyncio
    async def test_sink_drops_count_as_filtered(self) -> None:
        """Test that events a sink cannot submit are reported by the chain as dropped."""

        class DroppingSink(RecordingCollector):
            def __init__(self) -> None:
                super().__init__()
                self.dropped = PacketCounter()

            async def process(self, event: CollectorEvent) -> None:
                if event.kind is EventKind.UNPARSED:
                    self.dropped.update(event)
                else:
                    await super().process(event)

        dropping = DroppingSink()
        chain = CollectorChain().filter_user_traffic()
        head = chain.build(dropping)

        await feed(head, [*http_pair(1), CollectorEvent(kind=EventKind.UNPARSED)])

        assert chain.sink_dropped().total() == 1
        assert chain.dropped().get(Direction.INBOUND, EventKind.UNPARSED) == 1
        assert len(dropping.events) == 2

    def test_plain_sink_drops_nothing(self, sink: RecordingCollector) -> None:
        chain = CollectorChain()
        chain.build(sink)

        assert chain.sink_dropped().total() == 0

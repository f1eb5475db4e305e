"""Builder for linear collector pipelines."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Self

from apisync.collector.base import Collector
from apisync.collector.counting import PacketCountCollector, PacketCounter
from apisync.collector.filters import (
    FilterCollector,
    HostExclusionCollector,
    PathExclusionCollector,
    SamplingCollector,
    TrackerFilterCollector,
    UserTrafficCollector,
)

StageFactory = Callable[[Collector], Collector]


class CollectorChain:
    """Builds a pipeline from the first stage to the sink.

    Stages are added in the order events flow through them. ``build`` wraps
    the sink, so the first stage added is the one that sees events first.
    Each stage forwards to exactly one downstream stage.

    Usage:
        chain = CollectorChain().count(input_counter).filter_trackers()
        head = chain.build(BackendCollector(session_client, trace_id))
    """

    def __init__(self) -> None:
        self._factories: list[StageFactory] = []
        self.filters: list[FilterCollector] = []
        self.sink: Collector | None = None

    def add(self, factory: StageFactory) -> Self:
        """Append a stage built by ``factory(downstream)``."""
        self._factories.append(factory)
        return self

    def _add_filter(self, factory: Callable[[Collector], FilterCollector]) -> Self:
        def build(downstream: Collector) -> Collector:
            stage = factory(downstream)
            self.filters.append(stage)
            return stage

        return self.add(build)

    def count(self, counter: PacketCounter) -> Self:
        return self.add(lambda downstream: PacketCountCollector(downstream, counter))

    def filter_user_traffic(self) -> Self:
        return self._add_filter(UserTrafficCollector)

    def filter_trackers(self) -> Self:
        return self._add_filter(TrackerFilterCollector)

    def exclude_paths(self, patterns: list[str | re.Pattern[str]]) -> Self:
        if not patterns:
            return self
        return self._add_filter(lambda downstream: PathExclusionCollector(downstream, patterns))

    def exclude_hosts(self, patterns: list[str | re.Pattern[str]]) -> Self:
        if not patterns:
            return self
        return self._add_filter(lambda downstream: HostExclusionCollector(downstream, patterns))

    def sample(self, rate: float) -> Self:
        """Keep a fraction of events; a rate of 1.0 adds no stage."""
        if rate == 1.0:
            return self
        return self._add_filter(lambda downstream: SamplingCollector(downstream, rate))

    def build(self, sink: Collector) -> Collector:
        """Wire the stages in front of the sink and return the head."""
        self.filters.clear()
        self.sink = sink
        head = sink
        for factory in reversed(self._factories):
            head = factory(head)
        self.filters.reverse()
        return head

    def sink_dropped(self) -> PacketCounter:
        """Events the sink accepted but did not submit, for sinks that keep a ``dropped`` counter."""
        dropped = getattr(self.sink, "dropped", None)
        return dropped if isinstance(dropped, PacketCounter) else PacketCounter()

    def dropped(self) -> PacketCounter:
        """Sum of the events dropped by every filter stage and the sink of the last build."""
        total = self.sink_dropped()
        for stage in self.filters:
            total = total + stage.dropped
        return total

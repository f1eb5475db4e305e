"""Per-direction, per-kind event counters."""

from __future__ import annotations

import threading
from collections import Counter

from apisync.collector.base import Collector, ForwardingCollector
from apisync.models import CollectorEvent, Direction, EventKind

Bucket = tuple[Direction, EventKind]


class PacketCounter:
    """Thread-safe event counts keyed by (direction, kind).

    Counts live in memory only and are read at the end of a run.
    """

    def __init__(self) -> None:
        self._counts: Counter[Bucket] = Counter()
        self._lock = threading.Lock()

    def update(self, event: CollectorEvent) -> None:
        with self._lock:
            self._counts[(event.direction, event.kind)] += 1

    def get(self, direction: Direction, kind: EventKind) -> int:
        with self._lock:
            return self._counts[(direction, kind)]

    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())

    def snapshot(self) -> dict[Bucket, int]:
        """Copy of all non-zero counts."""
        with self._lock:
            return {bucket: count for bucket, count in self._counts.items() if count}

    def __add__(self, other: PacketCounter) -> PacketCounter:
        merged = PacketCounter()
        merged._counts = Counter(self.snapshot()) + Counter(other.snapshot())
        return merged

    def __sub__(self, other: PacketCounter) -> PacketCounter:
        remaining = PacketCounter()
        remaining._counts = Counter(self.snapshot()) - Counter(other.snapshot())
        return remaining


class PacketCountCollector(ForwardingCollector):
    """Counts every event that passes through without altering it."""

    def __init__(self, downstream: Collector, counter: PacketCounter | None = None) -> None:
        super().__init__(downstream)
        self.counter = counter or PacketCounter()

    async def process(self, event: CollectorEvent) -> None:
        self.counter.update(event)
        await self.downstream.process(event)

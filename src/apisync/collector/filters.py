"""Filtering stages.

Request filters drop HTTP requests that fail a predicate together with the
responses paired with them. Requests are assumed to arrive before their
responses; a response seen without its request (capture started
mid-connection) is forwarded.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Callable, Iterable

from apisync.collector.base import Collector, ForwardingCollector
from apisync.collector.counting import PacketCounter
from apisync.ids import WitnessID
from apisync.models import CollectorEvent, EventKind
from apisync.trackers import is_tracker_domain
from apisync.useragent import CLI_GIT_VERSION_HEADER, REQUEST_ID_HEADER

logger = logging.getLogger(__name__)

# Returns True if the request should be kept
RequestPredicate = Callable[[CollectorEvent], bool]


class FilterCollector(ForwardingCollector):
    """Base for stages that drop events.

    Attributes:
        dropped: Counts of the events this stage dropped
    """

    def __init__(self, downstream: Collector, dropped: PacketCounter | None = None) -> None:
        super().__init__(downstream)
        self.dropped = dropped or PacketCounter()

    def include(self, event: CollectorEvent) -> bool:
        return True

    async def process(self, event: CollectorEvent) -> None:
        if self.include(event):
            await self.downstream.process(event)
        else:
            self.dropped.update(event)


class RequestFilterCollector(FilterCollector):
    """Drops requests failing a predicate and the responses paired with them."""

    def __init__(
        self,
        downstream: Collector,
        predicate: RequestPredicate,
        dropped: PacketCounter | None = None,
    ) -> None:
        super().__init__(downstream, dropped)
        self.predicate = predicate
        self._filtered_ids: set[WitnessID] = set()

    def include(self, event: CollectorEvent) -> bool:
        witness_id = event.witness_id
        if event.kind is EventKind.HTTP_REQUEST:
            if self.predicate(event):
                return True
            if witness_id is not None:
                self._filtered_ids.add(witness_id)
            return False
        if event.kind is EventKind.HTTP_RESPONSE and witness_id is not None:
            if witness_id in self._filtered_ids:
                self._filtered_ids.discard(witness_id)
                return False
        return True


class TrackerFilterCollector(RequestFilterCollector):
    """Drops traffic to known third-party tracker domains."""

    def __init__(self, downstream: Collector, dropped: PacketCounter | None = None) -> None:
        super().__init__(downstream, lambda event: not is_tracker_domain(event.host), dropped)


def _matches_none(patterns: list[re.Pattern[str]], value: str | None) -> bool:
    if value is None:
        return True
    return not any(pattern.search(value) for pattern in patterns)


class PathExclusionCollector(RequestFilterCollector):
    """Drops requests whose path matches any of the given regexes."""

    def __init__(
        self,
        downstream: Collector,
        patterns: Iterable[str | re.Pattern[str]],
        dropped: PacketCounter | None = None,
    ) -> None:
        self.patterns = [re.compile(p) for p in patterns]
        super().__init__(downstream, lambda event: _matches_none(self.patterns, event.path), dropped)


class HostExclusionCollector(RequestFilterCollector):
    """Drops requests whose host matches any of the given regexes."""

    def __init__(
        self,
        downstream: Collector,
        patterns: Iterable[str | re.Pattern[str]],
        dropped: PacketCounter | None = None,
    ) -> None:
        self.patterns = [re.compile(p) for p in patterns]
        super().__init__(downstream, lambda event: _matches_none(self.patterns, event.host), dropped)


def contains_agent_traffic(event: CollectorEvent) -> bool:
    """Check whether an HTTP event is the agent's own traffic to the backend."""
    if not event.is_http:
        return False
    return any(event.header(name) for name in (CLI_GIT_VERSION_HEADER, REQUEST_ID_HEADER))


class UserTrafficCollector(FilterCollector):
    """Drops the agent's own requests and responses."""

    def include(self, event: CollectorEvent) -> bool:
        return not contains_agent_traffic(event)


_HASH_SPACE = 2**32


def _sample_key(event: CollectorEvent) -> str:
    if event.is_http and event.stream_id is not None:
        return f"{event.stream_id}{event.seq}"
    if event.connection_id is not None:
        return str(event.connection_id)
    return ""


class SamplingCollector(FilterCollector):
    """Keeps a deterministic fraction of events.

    The decision is a hash of the stream ID and sequence number, so a
    request and its response are kept or dropped together. Connection
    events are sampled by connection ID.
    """

    def __init__(self, downstream: Collector, sample_rate: float, dropped: PacketCounter | None = None) -> None:
        if not 0.0 <= sample_rate <= 1.0:
            raise ValueError(f"sample rate must be between 0 and 1, got {sample_rate}")
        super().__init__(downstream, dropped)
        self.sample_rate = sample_rate
        self._threshold = _HASH_SPACE * sample_rate

    def include(self, event: CollectorEvent) -> bool:
        digest = hashlib.blake2b(_sample_key(event).encode("utf-8"), digest_size=4).digest()
        return int.from_bytes(digest, "big") < self._threshold

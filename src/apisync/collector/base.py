"""Collector ABC and the forwarding base for pipeline stages."""

from __future__ import annotations

from abc import ABC, abstractmethod

from apisync.models import CollectorEvent


class Collector(ABC):
    """Accepts observed events one at a time.

    ``process`` either forwards an event downstream or drops it. It should
    only raise for unrecoverable errors that must stop the whole run.
    ``close`` finishes all pending work before returning.
    """

    @abstractmethod
    async def process(self, event: CollectorEvent) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class ForwardingCollector(Collector):
    """A stage that wraps exactly one downstream collector.

    Closing a stage closes its downstream stage.
    """

    def __init__(self, downstream: Collector) -> None:
        self.downstream = downstream

    async def process(self, event: CollectorEvent) -> None:
        await self.downstream.process(event)

    async def close(self) -> None:
        await self.downstream.close()

"""Collector pipeline.

Stages implement the ``Collector`` interface and are composed into a linear
chain ending in a sink such as ``BackendCollector``.
"""

from apisync.collector.backend import BackendCollector
from apisync.collector.base import Collector, ForwardingCollector
from apisync.collector.chain import CollectorChain
from apisync.collector.counting import PacketCountCollector, PacketCounter
from apisync.collector.filters import (
    FilterCollector,
    HostExclusionCollector,
    PathExclusionCollector,
    RequestFilterCollector,
    SamplingCollector,
    TrackerFilterCollector,
    UserTrafficCollector,
)

__all__ = [
    "BackendCollector",
    "Collector",
    "CollectorChain",
    "FilterCollector",
    "ForwardingCollector",
    "HostExclusionCollector",
    "PacketCountCollector",
    "PacketCounter",
    "PathExclusionCollector",
    "RequestFilterCollector",
    "SamplingCollector",
    "TrackerFilterCollector",
    "UserTrafficCollector",
]

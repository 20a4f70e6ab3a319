from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Gauge,
    GCCollector,
    PlatformCollector,
    ProcessCollector,
)

ALLOC_GAUGE_NAME = "memprobe_memory_alloc"


def build_registry(default_collectors: bool = True) -> CollectorRegistry:
    registry = CollectorRegistry()
    if default_collectors:
        ProcessCollector(registry=registry)
        PlatformCollector(registry=registry)
        GCCollector(registry=registry)
    return registry


def alloc_gauge(registry: Optional[CollectorRegistry] = None) -> Gauge:
    return Gauge(
        ALLOC_GAUGE_NAME,
        "Bytes of allocated heap objects.",
        registry=registry,
    )

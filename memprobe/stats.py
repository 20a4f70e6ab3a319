import gc
import sys
import threading
import time
import tracemalloc
from dataclasses import asdict, dataclass

import psutil

# Per-thread stack reservation assumed when threading.stack_size() reports
# the platform default (0).
DEFAULT_STACK_SIZE = 8 * 1024 * 1024

WIRE_NAMES = {
    "alloc": "Alloc",
    "total_alloc": "TotalAlloc",
    "sys": "Sys",
    "lookups": "Lookups",
    "mallocs": "Mallocs",
    "frees": "Frees",
    "heap_alloc": "HeapAlloc",
    "heap_sys": "HeapSys",
    "heap_idle": "HeapIdle",
    "heap_inuse": "HeapInuse",
    "heap_released": "HeapReleased",
    "heap_objects": "HeapObjects",
    "stack_inuse": "StackInuse",
    "stack_sys": "StackSys",
    "mspan_inuse": "MSpanInuse",
    "mspan_sys": "MSpanSys",
    "mcache_inuse": "MCacheInuse",
    "mcache_sys": "MCacheSys",
    "buck_hash_sys": "BuckHashSys",
    "gc_sys": "GCSys",
    "other_sys": "OtherSys",
    "next_gc": "NextGC",
    "last_gc": "LastGC",
    "pause_total_ns": "PauseTotalNs",
    "num_gc": "NumGC",
    "num_forced_gc": "NumForcedGC",
    "gc_cpu_fraction": "GCCPUFraction",
}


@dataclass(frozen=True)
class MemorySnapshot:
    alloc: int = 0
    total_alloc: int = 0
    sys: int = 0
    lookups: int = 0
    mallocs: int = 0
    frees: int = 0
    heap_alloc: int = 0
    heap_sys: int = 0
    heap_idle: int = 0
    heap_inuse: int = 0
    heap_released: int = 0
    heap_objects: int = 0
    stack_inuse: int = 0
    stack_sys: int = 0
    mspan_inuse: int = 0
    mspan_sys: int = 0
    mcache_inuse: int = 0
    mcache_sys: int = 0
    buck_hash_sys: int = 0
    gc_sys: int = 0
    other_sys: int = 0
    next_gc: int = 0
    last_gc: int = 0
    pause_total_ns: int = 0
    num_gc: int = 0
    num_forced_gc: int = 0
    gc_cpu_fraction: float = 0.0

    def to_dict(self) -> dict:
        """Flat dict keyed by the MemStats names existing /stats clients read."""
        return {WIRE_NAMES[k]: v for k, v in asdict(self).items()}

    def format(self) -> str:
        return " ".join(f"{k}:{v}" for k, v in self.to_dict().items())


class GCMonitor:
    """Accumulates collector pause time through ``gc.callbacks``.

    The callback can fire on any thread, including one that is already
    inside a locked section here, so the lock is reentrant.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._installed = False
        self._started_ns: dict[int, int] = {}
        self.pause_total_ns = 0
        self.last_gc_ns = 0
        self.num_forced = 0

    def install(self) -> None:
        with self._lock:
            if not self._installed:
                gc.callbacks.append(self._on_gc)
                self._installed = True

    def uninstall(self) -> None:
        with self._lock:
            if self._installed:
                gc.callbacks.remove(self._on_gc)
                self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def _on_gc(self, phase: str, info: dict) -> None:
        ident = threading.get_ident()
        if phase == "start":
            self._started_ns[ident] = time.perf_counter_ns()
            return

        started = self._started_ns.pop(ident, None)
        if started is None:
            return
        elapsed = time.perf_counter_ns() - started
        with self._lock:
            self.pause_total_ns += elapsed
            self.last_gc_ns = time.time_ns()

    def collect(self) -> int:
        with self._lock:
            self.num_forced += 1
        return gc.collect()

    def read(self) -> tuple[int, int, int]:
        with self._lock:
            return self.pause_total_ns, self.last_gc_ns, self.num_forced


gc_monitor = GCMonitor()
gc_monitor.install()

_process = psutil.Process()


def _stack_reservation(num_threads: int) -> int:
    return num_threads * (threading.stack_size() or DEFAULT_STACK_SIZE)


def _gc_totals() -> tuple[int, int]:
    stats = gc.get_stats()
    collections = sum(s.get("collections", 0) for s in stats)
    collected = sum(s.get("collected", 0) for s in stats)
    return collections, collected


def capture() -> MemorySnapshot:
    if not tracemalloc.is_tracing():
        tracemalloc.start()

    current, peak = tracemalloc.get_traced_memory()
    tracer_overhead = tracemalloc.get_tracemalloc_memory()

    with _process.oneshot():
        mem = _process.memory_info()
        num_threads = _process.num_threads()
        create_time = _process.create_time()

    num_gc, frees = _gc_totals()
    pause_total_ns, last_gc, num_forced = gc_monitor.read()

    threshold = gc.get_threshold()[0]
    pending = gc.get_count()[0]

    heap_sys = mem.rss
    heap_inuse = min(current, heap_sys)
    heap_objects = sys.getallocatedblocks()
    stack = _stack_reservation(num_threads)

    uptime_ns = (time.time() - create_time) * 1e9
    if uptime_ns > 0:
        gc_cpu_fraction = min(max(pause_total_ns / uptime_ns, 0.0), 1.0)
    else:
        gc_cpu_fraction = 0.0

    return MemorySnapshot(
        alloc=current,
        total_alloc=peak,
        sys=mem.vms,
        lookups=0,
        mallocs=heap_objects + frees,
        frees=frees,
        heap_alloc=current,
        heap_sys=heap_sys,
        heap_idle=heap_sys - heap_inuse,
        heap_inuse=heap_inuse,
        heap_released=0,
        heap_objects=heap_objects,
        stack_inuse=stack,
        stack_sys=stack,
        buck_hash_sys=tracer_overhead,
        other_sys=max(mem.vms - heap_sys - stack - tracer_overhead, 0),
        next_gc=max(threshold - pending, 0),
        last_gc=last_gc,
        pause_total_ns=pause_total_ns,
        num_gc=num_gc,
        num_forced_gc=num_forced,
        gc_cpu_fraction=gc_cpu_fraction,
    )

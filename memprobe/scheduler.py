import asyncio
import logging
import signal
import time
from typing import Callable, Optional, Protocol

from memprobe.errors import ProfileError
from memprobe.profiles import ProfileRequest, dump
from memprobe.stats import MemorySnapshot, capture

logger = logging.getLogger(__name__)

METRICS_PERIOD = 10.0


class Gauge(Protocol):
    def set(self, value: float) -> None: ...


class Ticker:
    """Fixed-rate tick source.

    Schedule instants that pass while the consumer is still busy with the
    previous tick are dropped, never queued.
    """

    def __init__(self, interval: float):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self.skipped = 0
        self._deadline: Optional[float] = None
        self._stopped = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def stop(self) -> None:
        self._stopped.set()

    async def wait(self) -> bool:
        if self._stopped.is_set():
            return False

        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._deadline is None:
            self._deadline = now + self.interval
        elif now > self._deadline:
            missed = int((now - self._deadline) // self.interval) + 1
            self._deadline += missed * self.interval
            self.skipped += missed
            logger.warning(
                "Tick overran the %.3fs interval, skipped %d tick(s)",
                self.interval,
                missed,
            )

        try:
            await asyncio.wait_for(
                self._stopped.wait(), timeout=self._deadline - now
            )
        except asyncio.TimeoutError:
            self._deadline += self.interval
            return True
        return False


async def _sleep_until(stop: asyncio.Event, timeout: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        pass


class MetricsExporter:
    def __init__(
        self,
        gauge: Gauge,
        period: float = METRICS_PERIOD,
        sampler: Callable[[], MemorySnapshot] = capture,
    ):
        self.gauge = gauge
        self.period = period
        self._sampler = sampler
        self.exports = 0

    def export_once(self) -> None:
        snapshot = self._sampler()
        self.gauge.set(float(snapshot.alloc))
        self.exports += 1
        logger.debug("Exported alloc=%d bytes", snapshot.alloc)

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("Metrics exporter started (period %.1fs)", self.period)
        while not stop.is_set():
            self.export_once()
            await _sleep_until(stop, self.period)
        logger.info("Metrics exporter stopped after %d exports", self.exports)


class ScheduledDumpLoop:
    def __init__(
        self,
        request: ProfileRequest,
        ticker: Ticker,
        stop: asyncio.Event,
        sampler: Callable[[], MemorySnapshot] = capture,
        dumper: Callable[[str, str], None] = dump,
    ):
        self.request = request
        self.ticker = ticker
        self.stop = stop
        self._sampler = sampler
        self._dumper = dumper
        self.ticks = 0
        self.failures = 0

    async def tick(self) -> None:
        self.ticks += 1
        snapshot = self._sampler()
        logger.info("Memory stats: %s", snapshot.format())

        kind, path = self.request.kind, self.request.path
        try:
            start = time.perf_counter()
            await asyncio.to_thread(self._dumper, kind, path)
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.debug("Dumped %s profile in %.1fms", kind, elapsed_ms)
        except ProfileError as e:
            self.failures += 1
            logger.error("Error dumping %s profile: %s", kind, e)
        except Exception:
            self.failures += 1
            logger.exception("Unexpected error dumping %s profile", kind)

    async def run(self) -> None:
        logger.info(
            "Scheduled %s profile dumps to %s every %.3fs",
            self.request.kind,
            self.request.path,
            self.ticker.interval,
        )
        while not self.stop.is_set():
            if not await self.ticker.wait():
                break
            if self.stop.is_set():
                break
            await self.tick()
        logger.info("Scheduled dump loop stopped after %d ticks", self.ticks)


class ShutdownCoordinator:
    def __init__(self, ticker: Ticker, stop: asyncio.Event):
        self.ticker = ticker
        self.stop = stop
        self.signum: Optional[int] = None
        self._signalled = asyncio.Event()

    def install_signal_handlers(
        self, signals: tuple = (signal.SIGINT, signal.SIGTERM)
    ) -> None:
        loop = asyncio.get_running_loop()
        for sig in signals:
            try:
                loop.add_signal_handler(sig, self.notify, sig)
            except NotImplementedError:
                logger.warning("Signal handlers are not supported on this platform")
                return

    def notify(self, signum: Optional[int] = None) -> None:
        if self.signum is None:
            self.signum = signum
        self._signalled.set()

    @property
    def signalled(self) -> bool:
        return self._signalled.is_set()

    async def run(self) -> None:
        await self._signalled.wait()
        logger.info("Received shutdown signal")
        self.ticker.stop()
        self.stop.set()

import asyncio
import errno
import io
import logging
import os
import re
import signal
import sys
import time

import pytest

from memprobe import profiles
from memprobe.errors import ProfileNotFound
from memprobe.profiles import ProfileRequest, dump
from memprobe.scheduler import (
    MetricsExporter,
    ScheduledDumpLoop,
    ShutdownCoordinator,
    Ticker,
)


def make_loop(request, interval, sampler, dumper):
    ticker = Ticker(interval)
    stop = asyncio.Event()
    loop = ScheduledDumpLoop(request, ticker, stop, sampler=sampler, dumper=dumper)
    return loop, ticker, stop


class TestTicker:
    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            Ticker(0)

    def test_ticks_at_interval(self):
        async def run():
            ticker = Ticker(0.05)
            start = time.monotonic()
            results = [await ticker.wait() for _ in range(3)]
            return results, time.monotonic() - start

        results, elapsed = asyncio.run(run())
        assert results == [True, True, True]
        assert elapsed >= 0.14

    def test_stop_wakes_waiter(self):
        async def run():
            ticker = Ticker(10.0)
            waiter = asyncio.create_task(ticker.wait())
            await asyncio.sleep(0.01)
            ticker.stop()
            return await asyncio.wait_for(waiter, timeout=1.0)

        assert asyncio.run(run()) is False

    def test_wait_after_stop_returns_immediately(self):
        async def run():
            ticker = Ticker(10.0)
            ticker.stop()
            return await ticker.wait()

        assert asyncio.run(run()) is False

    def test_overrun_ticks_are_skipped(self, caplog):
        caplog.set_level(logging.WARNING, logger="memprobe")

        async def run():
            ticker = Ticker(0.05)
            await ticker.wait()
            await asyncio.sleep(0.18)
            await ticker.wait()
            return ticker.skipped

        assert asyncio.run(run()) >= 2
        assert "skipped" in caplog.text


class TestMetricsExporter:
    def test_pushes_alloc_into_gauge(self, gauge, make_snapshot):
        async def run():
            exporter = MetricsExporter(
                gauge, period=0.05, sampler=lambda: make_snapshot(alloc=2048)
            )
            stop = asyncio.Event()
            task = asyncio.create_task(exporter.run(stop))
            await asyncio.sleep(0.17)
            stop.set()
            await asyncio.wait_for(task, timeout=1.0)
            return exporter

        exporter = asyncio.run(run())
        assert exporter.exports >= 3
        assert gauge.values == [2048.0] * exporter.exports

    def test_exports_immediately(self, gauge, make_snapshot):
        exporter = MetricsExporter(gauge, sampler=make_snapshot)
        exporter.export_once()
        assert gauge.values == [4096.0]

    def test_stop_interrupts_period(self, gauge, make_snapshot):
        async def run():
            exporter = MetricsExporter(gauge, period=60.0, sampler=make_snapshot)
            stop = asyncio.Event()
            task = asyncio.create_task(exporter.run(stop))
            await asyncio.sleep(0.01)
            stop.set()
            await asyncio.wait_for(task, timeout=1.0)

        asyncio.run(run())
        assert len(gauge.values) == 1


class TestScheduledDumpLoop:
    def test_snapshot_logged_before_dump(self, make_snapshot, caplog):
        caplog.set_level(logging.INFO, logger="memprobe")
        events = []

        def sampler():
            events.append("sample")
            return make_snapshot()

        def dumper(kind, path):
            events.append(("dump", kind, path))

        async def run():
            loop, _, _ = make_loop(
                ProfileRequest("heap", "heap.prof"), 1.0, sampler, dumper
            )
            await loop.tick()
            await loop.tick()
            return loop

        loop = asyncio.run(run())
        assert loop.ticks == 2
        assert events == [
            "sample",
            ("dump", "heap", "heap.prof"),
            "sample",
            ("dump", "heap", "heap.prof"),
        ]
        assert "Memory stats: Alloc:4096" in caplog.text

    def test_dump_failures_do_not_stop_loop(self, make_snapshot, caplog):
        caplog.set_level(logging.INFO, logger="memprobe")
        calls = []

        def dumper(kind, path):
            calls.append(kind)
            if len(calls) == 1:
                raise ProfileNotFound(kind)
            if len(calls) == 2:
                raise RuntimeError("disk on fire")

        async def run():
            loop, ticker, stop = make_loop(
                ProfileRequest("block", "block.prof"), 0.03, make_snapshot, dumper
            )
            task = asyncio.create_task(loop.run())
            await asyncio.sleep(0.16)
            ticker.stop()
            stop.set()
            await asyncio.wait_for(task, timeout=1.0)
            return loop

        loop = asyncio.run(run())
        assert len(calls) >= 3
        assert loop.failures == 2
        assert "Error dumping block profile: could not find block profile" in caplog.text
        assert "Unexpected error dumping block profile" in caplog.text

    def test_debug_logs_export_and_dump_timing(self, gauge, make_snapshot, caplog):
        caplog.set_level(logging.DEBUG, logger="memprobe")

        async def run():
            loop, _, _ = make_loop(
                ProfileRequest("heap", "heap.prof"),
                1.0,
                make_snapshot,
                lambda kind, path: None,
            )
            await loop.tick()

        MetricsExporter(gauge, sampler=make_snapshot).export_once()
        asyncio.run(run())
        assert "Exported alloc=4096 bytes" in caplog.text
        assert re.search(r"Dumped heap profile in \d+\.\dms", caplog.text)

    def test_disk_full_is_a_dump_error(self, make_snapshot, caplog, monkeypatch):
        caplog.set_level(logging.INFO, logger="memprobe")

        class FullFile(io.BytesIO):
            def write(self, data):
                raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(
            profiles, "open", lambda path, mode: FullFile(), raising=False
        )

        async def run():
            loop, _, _ = make_loop(
                ProfileRequest("heap", "heap.prof"), 1.0, make_snapshot, dump
            )
            await loop.tick()
            return loop

        loop = asyncio.run(run())
        assert loop.failures == 1
        assert "Error dumping heap profile: could not write heap profile" in caplog.text
        assert "Unexpected error" not in caplog.text

    def test_overwrites_profile_every_tick(self, tmp_path, make_snapshot):
        path = tmp_path / "goroutine.prof"
        mtimes = []

        def dumper(kind, target):
            dump(kind, target)
            mtimes.append(os.stat(target).st_mtime_ns)

        async def run():
            loop, ticker, stop = make_loop(
                ProfileRequest("goroutine", str(path)), 0.25, make_snapshot, dumper
            )
            task = asyncio.create_task(loop.run())
            await asyncio.sleep(0.9)
            ticker.stop()
            stop.set()
            await asyncio.wait_for(task, timeout=2.0)

        asyncio.run(run())
        assert len(mtimes) >= 3
        assert all(a < b for a, b in zip(mtimes, mtimes[1:]))
        assert path.stat().st_size > 0

    def test_stop_lets_in_flight_tick_finish(self, make_snapshot):
        finished = []

        def slow_dumper(kind, path):
            time.sleep(0.2)
            finished.append(kind)

        async def run():
            loop, ticker, stop = make_loop(
                ProfileRequest("heap", "heap.prof"), 0.05, make_snapshot, slow_dumper
            )
            coordinator = ShutdownCoordinator(ticker, stop)
            loop_task = asyncio.create_task(loop.run())
            shutdown_task = asyncio.create_task(coordinator.run())
            await asyncio.sleep(0.1)
            coordinator.notify()
            await asyncio.wait_for(shutdown_task, timeout=0.05)
            assert not loop_task.done()
            await asyncio.wait_for(loop_task, timeout=1.0)
            return loop

        loop = asyncio.run(run())
        assert loop.ticks == 1
        assert finished == ["heap"]


class TestShutdownCoordinator:
    def test_no_ticks_after_signal(self, make_snapshot):
        dumps = []

        async def run():
            interval = 0.1
            loop, ticker, stop = make_loop(
                ProfileRequest("goroutine", "g.prof"),
                interval,
                make_snapshot,
                lambda kind, path: dumps.append(time.monotonic()),
            )
            coordinator = ShutdownCoordinator(ticker, stop)
            loop_task = asyncio.create_task(loop.run())
            shutdown_task = asyncio.create_task(coordinator.run())

            await asyncio.sleep(0.25)
            coordinator.notify()
            await shutdown_task
            count_at_signal = len(dumps)
            await asyncio.sleep(2 * interval)
            return loop_task, count_at_signal, ticker, stop

        loop_task, count_at_signal, ticker, stop = asyncio.run(run())
        assert count_at_signal >= 2
        assert len(dumps) == count_at_signal
        assert loop_task.done()
        assert ticker.stopped
        assert stop.is_set()

    def test_does_not_stop_exporter(self):
        async def run():
            ticker = Ticker(1.0)
            dump_stop = asyncio.Event()
            exporter_stop = asyncio.Event()
            coordinator = ShutdownCoordinator(ticker, dump_stop)
            coordinator.notify(signal.SIGINT)
            await coordinator.run()
            return exporter_stop, coordinator

        exporter_stop, coordinator = asyncio.run(run())
        assert not exporter_stop.is_set()
        assert coordinator.signum == signal.SIGINT

    def test_first_signal_is_recorded(self):
        coordinator = ShutdownCoordinator(Ticker(1.0), asyncio.Event())
        coordinator.notify(signal.SIGTERM)
        coordinator.notify(signal.SIGINT)
        assert coordinator.signum == signal.SIGTERM
        assert coordinator.signalled

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
    def test_handles_process_signal(self):
        async def run():
            ticker = Ticker(1.0)
            stop = asyncio.Event()
            coordinator = ShutdownCoordinator(ticker, stop)
            coordinator.install_signal_handlers((signal.SIGUSR1,))
            try:
                task = asyncio.create_task(coordinator.run())
                os.kill(os.getpid(), signal.SIGUSR1)
                await asyncio.wait_for(task, timeout=1.0)
            finally:
                asyncio.get_running_loop().remove_signal_handler(signal.SIGUSR1)
            return coordinator, ticker, stop

        coordinator, ticker, stop = asyncio.run(run())
        assert coordinator.signum == signal.SIGUSR1
        assert ticker.stopped
        assert stop.is_set()

import argparse
import asyncio
import logging
import sys
from typing import Callable, Optional

from memprobe.config import Config, ConfigWatcher, load_config, validate_config
from memprobe.errors import ConfigError
from memprobe.logs import close_logging, setup_logging
from memprobe.metrics import alloc_gauge, build_registry
from memprobe.profiles import ProfileRequest, dump
from memprobe.scheduler import (
    METRICS_PERIOD,
    Gauge,
    MetricsExporter,
    ScheduledDumpLoop,
    ShutdownCoordinator,
    Ticker,
)
from memprobe.stats import MemorySnapshot, capture, gc_monitor

logger = logging.getLogger(__name__)


class Agent:
    """Runs the metrics exporter, the scheduled dump loop and the shutdown
    coordinator as independent tasks on the current event loop."""

    def __init__(
        self,
        config: Config,
        gauge: Gauge,
        config_path: Optional[str] = None,
        metrics_period: float = METRICS_PERIOD,
        sampler: Callable[[], MemorySnapshot] = capture,
        dumper: Callable[[str, str], None] = dump,
    ):
        self.config = config
        self.request = ProfileRequest(config.profile, config.profile_file)

        self.ticker = Ticker(config.interval)
        self.dump_stop = asyncio.Event()
        self.exporter_stop = asyncio.Event()

        self.exporter = MetricsExporter(gauge, metrics_period, sampler)
        self.dump_loop = ScheduledDumpLoop(
            self.request, self.ticker, self.dump_stop, sampler, dumper
        )
        self.coordinator = ShutdownCoordinator(self.ticker, self.dump_stop)
        self.watcher = ConfigWatcher(config_path) if config_path else None

        self._tasks: list[asyncio.Task] = []
        self._coordinator_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError("Agent already started")

        gc_monitor.install()
        self._coordinator_task = asyncio.create_task(
            self.coordinator.run(), name="shutdown"
        )
        self._tasks = [
            asyncio.create_task(
                self.exporter.run(self.exporter_stop), name="metrics-exporter"
            ),
            asyncio.create_task(self.dump_loop.run(), name="scheduled-dump"),
            self._coordinator_task,
        ]
        if self.watcher is not None:
            self._tasks.append(
                asyncio.create_task(
                    self.watcher.run(self.exporter_stop), name="config-watcher"
                )
            )
        logger.info(
            "Agent started: profile=%s file=%s interval=%.3fs",
            self.request.kind,
            self.request.path,
            self.ticker.interval,
        )

    async def wait_for_signal(self) -> None:
        if self._coordinator_task is None:
            raise RuntimeError("Agent not started")
        await self._coordinator_task

    async def shutdown(self, grace: float = 1.0) -> None:
        """Signal the coordinator, stop the exporter and reap every task.

        An in-flight dump is not awaited beyond ``grace`` seconds. Cancelling
        the task does not stop the ``asyncio.to_thread`` worker running the
        dump, and ``asyncio.run`` joins the default executor on exit, so the
        process can still wait for that dump to finish. During a cpu capture
        that is up to ``CPU_PROFILE_WINDOW`` (10s).
        """
        self.coordinator.notify()
        self.exporter_stop.set()
        if not self._tasks:
            return

        _, pending = await asyncio.wait(self._tasks, timeout=grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Agent stopped")


async def run_headless(config: Config, config_path: Optional[str] = None) -> None:
    agent = Agent(config, alloc_gauge(build_registry()), config_path)
    agent.start()
    agent.coordinator.install_signal_handlers()
    await agent.wait_for_signal()
    await agent.shutdown()


def fatal(message: str) -> None:
    logger.critical(message)
    print(f"[memprobe] Fatal: {message}", file=sys.stderr)
    sys.exit(1)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="In-process memory telemetry and profile dumping agent"
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default="config.json",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind the HTTP server to (overrides config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to run server on (overrides config)",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Run the scheduled loops without the HTTP server",
    )

    args = parser.parse_args(argv)

    try:
        config = validate_config(load_config(args.config))
    except ConfigError as e:
        fatal(str(e))

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    try:
        handler = setup_logging(config.log_file)
    except OSError as e:
        fatal(f"could not open log file: {e}")

    try:
        if args.headless:
            print(f"[memprobe] Running headless, logging to {config.log_file}")
            asyncio.run(run_headless(config, args.config))
            return

        import uvicorn

        from memprobe.server.app import create_app

        app = create_app(config, config_path=args.config)
        print(f"[memprobe] Server starting on {config.host}:{config.port}")
        logger.info("Starting HTTP server on %s:%d", config.host, config.port)
        uvicorn.run(app, host=config.host, port=config.port)
    finally:
        close_logging(handler)


if __name__ == "__main__":
    main()

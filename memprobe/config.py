import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from memprobe.errors import ConfigError
from memprobe.profiles import ProfileKind

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass
class Config:
    interval: float = 0.0
    duration: float = 0.0
    profile: str = ""
    profile_file: str = ""
    log_file: str = ""
    username: str = ""
    password: str = ""
    host: str = "0.0.0.0"
    port: int = 8080


_config: Optional[Config] = None
_config_path: Optional[str] = None


def parse_duration(value: Union[int, float, str, None], name: str) -> float:
    """Parse seconds (number) or a Go-style duration string such as ``1m30s``."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"Invalid {name} value: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid {name} value: {value!r}")

    text = value.strip()
    sign = 1.0
    if text and text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0

    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"Invalid {name} value: {value!r}")
    return sign * total


def _parse_port(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Invalid port value: {value!r}")
    return value


def _parse_config(data: dict) -> Config:
    return Config(
        interval=parse_duration(data.get("interval"), "interval"),
        duration=parse_duration(data.get("duration"), "duration"),
        profile=str(data.get("profile") or ""),
        profile_file=str(data.get("profileFile") or ""),
        log_file=str(data.get("logFile") or ""),
        username=str(data.get("username") or ""),
        password=str(data.get("password") or ""),
        host=str(data.get("host") or "0.0.0.0"),
        port=_parse_port(data.get("port", 8080)),
    )


def _read_config(path: str) -> Config:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Error reading config file: {path} not found")

    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Error reading config file: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("Error reading config file: expected a JSON object")

    return _parse_config(data)


def load_config(path: str = "config.json") -> Config:
    global _config, _config_path

    if _config is not None and _config_path == path:
        return _config

    _config = _read_config(path)
    _config_path = path
    return _config


def validate_config(config: Config) -> Config:
    if config.interval <= 0:
        raise ConfigError("Invalid interval value")
    if config.duration <= 0:
        raise ConfigError("Invalid duration value")
    if not config.profile:
        raise ConfigError("Profile type not specified")
    if config.profile not in {k.value for k in ProfileKind}:
        raise ConfigError(f"Unknown profile type: {config.profile}")
    if not config.profile_file:
        raise ConfigError("Profile file not specified")
    if not config.log_file:
        raise ConfigError("Log file not specified")
    if not config.username or not config.password:
        raise ConfigError("Username or password not specified")
    if not 0 < config.port < 65536:
        raise ConfigError(f"Invalid port value: {config.port}")
    return config


def get_config() -> Config:
    global _config
    if _config is None:
        return load_config()
    return _config


def reload_config(path: Optional[str] = None, validate: bool = False) -> Config:
    """Re-read the config file, bypassing the cache.

    The cached config is only replaced once the new file has been read
    (and validated, with ``validate``). On error the previous config stays.
    """
    global _config, _config_path

    path = path or _config_path or "config.json"
    config = _read_config(path)
    if validate:
        validate_config(config)

    _config = config
    _config_path = path
    return config


class _ConfigFileHandler(FileSystemEventHandler):
    """Forwards events touching one file. Runs on the observer thread."""

    def __init__(self, path: str, on_change: Callable[[], None]):
        self.path = os.path.realpath(path)
        self.on_change = on_change

    def _matches(self, event_path) -> bool:
        if not event_path:
            return False
        return os.path.realpath(os.fsdecode(event_path)) == self.path

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if event.event_type not in ("modified", "created", "moved", "deleted"):
            return
        if self._matches(event.src_path) or self._matches(
            getattr(event, "dest_path", "")
        ):
            self.on_change()


class ConfigWatcher:
    """Reloads the config file when the filesystem reports it changed.

    Loops already running keep the values they started with; a changed
    profile or interval applies on the next restart.
    """

    def __init__(self, path: str, debounce: float = 0.1):
        self.path = path
        self.debounce = debounce
        self.changes = 0

    def reload(self) -> bool:
        self.changes += 1
        logger.info("Config file changed: %s", self.path)
        try:
            reload_config(self.path, validate=True)
        except ConfigError as e:
            logger.error("Ignoring invalid config change: %s", e)
            return False
        return True

    async def run(self, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        handler = _ConfigFileHandler(
            self.path, lambda: loop.call_soon_threadsafe(changed.set)
        )

        # Watch the directory so editors that replace the file are seen.
        directory = os.path.dirname(os.path.realpath(self.path))
        observer = Observer()
        observer.schedule(handler, directory, recursive=False)
        observer.start()
        logger.info("Watching config file %s", self.path)

        try:
            while not stop.is_set():
                stop_wait = asyncio.create_task(stop.wait())
                change_wait = asyncio.create_task(changed.wait())
                done, pending = await asyncio.wait(
                    {stop_wait, change_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

                if change_wait in done and not stop.is_set():
                    # A single save often fires several events.
                    await asyncio.sleep(self.debounce)
                    changed.clear()
                    self.reload()
        finally:
            observer.stop()
            await asyncio.to_thread(observer.join)

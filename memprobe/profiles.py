import logging
import os
import pickle
import sys
import threading
import time
import traceback
import tracemalloc
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Callable, Optional, Union

import psutil

from memprobe.errors import (
    ProfileIOError,
    ProfileNotFound,
    UnknownProfileKind,
)
from memprobe.stats import gc_monitor

logger = logging.getLogger(__name__)

CPU_PROFILE_WINDOW = 10.0
CPU_SAMPLE_INTERVAL = 0.01

# Innermost Python frames that mean a thread is parked on a lock,
# condition, queue, sleep or socket call.
BLOCKING_CALLS = frozenset(
    {
        "acquire",
        "wait",
        "wait_for",
        "_wait_for_tstate_lock",
        "join",
        "get",
        "put",
        "sleep",
        "select",
        "poll",
        "accept",
        "recv",
        "recv_into",
        "recvfrom",
        "readinto",
        "readline",
    }
)


class ProfileKind(str, Enum):
    HEAP = "heap"
    GOROUTINE = "goroutine"
    CPU = "cpu"
    THREADCREATE = "threadcreate"
    BLOCK = "block"


@dataclass(frozen=True)
class ProfileRequest:
    kind: str
    path: str


class NamedProfile:
    def __init__(self, name: str, writer: Callable[[], str]):
        self.name = name
        self._writer = writer

    def write_to(self, f: BinaryIO) -> None:
        f.write(self._writer().encode("utf-8"))


_registry: dict[str, NamedProfile] = {}


def register(name: str, writer: Callable[[], str]) -> NamedProfile:
    profile = NamedProfile(name, writer)
    _registry[name] = profile
    return profile


def lookup(name: str) -> Optional[NamedProfile]:
    return _registry.get(name)


def _thread_names() -> dict[int, threading.Thread]:
    return {t.ident: t for t in threading.enumerate() if t.ident is not None}


def _format_thread(ident: int, frame, threads: dict) -> str:
    thread = threads.get(ident)
    name = thread.name if thread else "unknown"
    stack = "".join(traceback.format_stack(frame))
    return f"\nthread {ident} [{name}]:\n{stack}"


def _goroutine_profile() -> str:
    frames = sys._current_frames()
    threads = _thread_names()
    parts = [f"thread profile: total {len(frames)}\n"]
    for ident, frame in frames.items():
        parts.append(_format_thread(ident, frame, threads))
    return "".join(parts)


def _threadcreate_profile() -> str:
    threads = threading.enumerate()
    os_threads = psutil.Process().threads()
    parts = [f"threadcreate profile: total {len(os_threads)}\n"]

    parts.append("\n# python threads\n")
    for t in threads:
        parts.append(
            f"{t.ident} native_id={t.native_id} name={t.name!r} "
            f"daemon={t.daemon} alive={t.is_alive()}\n"
        )

    parts.append("\n# os threads\n")
    for t in os_threads:
        parts.append(f"{t.id} user={t.user_time:.3f}s system={t.system_time:.3f}s\n")
    return "".join(parts)


def _block_profile() -> str:
    frames = sys._current_frames()
    threads = _thread_names()
    blocked = {
        ident: frame
        for ident, frame in frames.items()
        if frame.f_code.co_name in BLOCKING_CALLS
    }
    parts = [f"block profile: total {len(blocked)}\n"]
    for ident, frame in blocked.items():
        parts.append(_format_thread(ident, frame, threads))
    return "".join(parts)


register(ProfileKind.GOROUTINE.value, _goroutine_profile)
register(ProfileKind.THREADCREATE.value, _threadcreate_profile)
register(ProfileKind.BLOCK.value, _block_profile)


def _fold(frame) -> str:
    names = []
    while frame is not None:
        code = frame.f_code
        filename = os.path.basename(code.co_filename)
        names.append(f"{code.co_name} ({filename}:{code.co_firstlineno})")
        frame = frame.f_back
    return ";".join(reversed(names))


class CpuSampler:
    """Statistical sampler over every Python thread's current stack."""

    def __init__(self, interval: float = CPU_SAMPLE_INTERVAL):
        self.interval = interval
        self.stacks: Counter = Counter()
        self.samples = 0
        self._ignore: set[int] = set()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started = 0.0
        self.elapsed = 0.0

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("CPU sampler already started")
        self._ignore = {threading.get_ident()}
        self._started = time.perf_counter()
        self._thread = threading.Thread(
            target=self._run, name="memprobe-cpu-sampler", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            raise RuntimeError("CPU sampler not started")
        self._stop.set()
        self._thread.join()
        self.elapsed = time.perf_counter() - self._started

    def _run(self) -> None:
        self._ignore.add(threading.get_ident())
        while not self._stop.wait(self.interval):
            for ident, frame in sys._current_frames().items():
                if ident in self._ignore:
                    continue
                self.stacks[_fold(frame)] += 1
            self.samples += 1

    def write_to(self, f: BinaryIO) -> None:
        lines = [
            f"# cpu profile: duration={self.elapsed:.3f}s "
            f"interval={self.interval}s samples={self.samples}\n"
        ]
        for stack, count in self.stacks.most_common():
            lines.append(f"{stack} {count}\n")
        f.write("".join(lines).encode("utf-8"))


def _write_heap(f: BinaryIO) -> None:
    gc_monitor.collect()
    if not tracemalloc.is_tracing():
        tracemalloc.start()
    snapshot = tracemalloc.take_snapshot()
    pickle.dump(snapshot, f, pickle.HIGHEST_PROTOCOL)


def _write_cpu(f: BinaryIO, window: float) -> None:
    sampler = CpuSampler()
    sampler.start()
    try:
        time.sleep(window)
    finally:
        sampler.stop()
    sampler.write_to(f)


def _write_named(f: BinaryIO, name: str) -> None:
    profile = lookup(name)
    if profile is None:
        raise ProfileNotFound(name)
    profile.write_to(f)


def dump(
    kind: Union[str, ProfileKind],
    path: str,
    cpu_window: float = CPU_PROFILE_WINDOW,
) -> None:
    """Write one profile of ``kind`` to ``path``, truncating the file.

    ``cpu`` blocks the calling thread for ``cpu_window`` seconds while the
    sampler runs. ``heap`` forces a full collection first.
    """
    name = kind.value if isinstance(kind, ProfileKind) else kind

    try:
        f = open(path, "wb")
    except OSError as e:
        raise ProfileIOError(f"could not create profile: {e}") from e

    try:
        with f:
            try:
                profile_kind = ProfileKind(name)
            except ValueError:
                raise UnknownProfileKind(name) from None

            if profile_kind is ProfileKind.HEAP:
                _write_heap(f)
            elif profile_kind is ProfileKind.CPU:
                _write_cpu(f, cpu_window)
            else:
                _write_named(f, profile_kind.value)
            f.flush()
    except OSError as e:
        raise ProfileIOError(f"could not write {name} profile: {e}") from e

    logger.debug("Wrote %s profile to %s", name, path)

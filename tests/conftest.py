import pytest

from memprobe import config as config_module
from memprobe.config import Config
from memprobe.stats import MemorySnapshot


class FakeGauge:
    def __init__(self):
        self.values: list[float] = []

    def set(self, value: float) -> None:
        self.values.append(value)


@pytest.fixture(autouse=True)
def reset_config_cache(monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    monkeypatch.setattr(config_module, "_config_path", None)


@pytest.fixture
def gauge():
    return FakeGauge()


@pytest.fixture
def make_snapshot():
    def factory(**fields) -> MemorySnapshot:
        fields.setdefault("alloc", 4096)
        return MemorySnapshot(**fields)

    return factory


@pytest.fixture
def agent_config(tmp_path):
    return Config(
        interval=60.0,
        duration=10.0,
        profile="goroutine",
        profile_file=str(tmp_path / "goroutine.prof"),
        log_file=str(tmp_path / "memprobe.log"),
        username="admin",
        password="s3cret",
    )

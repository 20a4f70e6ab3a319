__version__ = "1.0.0"

from memprobe.agent import Agent
from memprobe.config import get_config, load_config, validate_config
from memprobe.profiles import ProfileKind, ProfileRequest, dump
from memprobe.stats import MemorySnapshot, capture

__all__ = [
    "__version__",
    "Agent",
    "get_config",
    "load_config",
    "validate_config",
    "ProfileKind",
    "ProfileRequest",
    "dump",
    "MemorySnapshot",
    "capture",
]

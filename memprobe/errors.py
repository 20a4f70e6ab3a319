class MemprobeError(Exception):
    pass


class ConfigError(MemprobeError):
    """Missing or invalid configuration; fatal at startup."""


class ProfileError(MemprobeError):
    """Base class for failures while dumping a profile."""


class ProfileIOError(ProfileError):
    pass


class ProfileNotFound(ProfileError):
    def __init__(self, name: str):
        super().__init__(f"could not find {name} profile")
        self.name = name


class UnknownProfileKind(ProfileError):
    def __init__(self, kind: str):
        super().__init__(f"unknown profile type: {kind}")
        self.kind = kind

"""Error taxonomy shared by the cache, hub client and batch orchestrator."""

from __future__ import annotations


class HubRunnerError(Exception):
    """Base class for every error raised by hubrunner."""

    kind = "error"


class ConfigError(HubRunnerError, ValueError):
    """Raised when a batch document is malformed or semantically invalid."""

    kind = "config"

    def __init__(self, message: str, *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])


class NotFoundError(HubRunnerError):
    """Raised when an artifact, filename or cache entry does not exist."""

    kind = "not-found"


class RemoteError(HubRunnerError):
    """Raised on a non-success HTTP status or a transport failure."""

    kind = "remote"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HubTimeoutError(RemoteError):
    """Raised when a hub request exceeds the configured timeout."""

    kind = "timeout"


class DecodeError(HubRunnerError):
    """Raised when hub metadata cannot be parsed into the expected shape."""

    kind = "decode"


class LocalIOError(HubRunnerError):
    """Raised when a local filesystem operation fails."""

    kind = "local-io"


class IntegrityError(HubRunnerError):
    """Raised when downloaded bytes do not match a trusted digest."""

    kind = "integrity"


class InferenceError(HubRunnerError):
    """Opaque failure reported by an inference runner."""

    kind = "inference"


__all__ = [
    "ConfigError",
    "DecodeError",
    "HubRunnerError",
    "HubTimeoutError",
    "InferenceError",
    "IntegrityError",
    "LocalIOError",
    "NotFoundError",
    "RemoteError",
]

"""Application-level exception types for ccrelay."""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for ccrelay."""


class ConfigurationError(RelayError):
    """Base exception for configuration and startup validation errors."""


class MissingSettingError(ConfigurationError):
    """Raised when a required setting is missing."""

    def __init__(self, names: list[str]) -> None:
        self.names = list(names)
        super().__init__(f"missing required settings: {', '.join(self.names)}")


class ActorLifecycleError(RelayError):
    """Raised after a lifecycle fan-out when one or more actors failed."""

    def __init__(self, phase: str, failures: dict[str, BaseException]) -> None:
        self.phase = phase
        self.failures = dict(failures)
        names = ", ".join(self.failures)
        super().__init__(f"{phase} failed for actors: {names}")


class EngineError(RelayError):
    """Base exception for query engine failures."""


class EngineProcessError(EngineError):
    """Raised when the engine process exits abnormally."""

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class QueryAbortedError(EngineError):
    """Raised when an in-flight query is cancelled."""

    def __init__(self, message: str = "Query was aborted") -> None:
        super().__init__(message)


class EngineQueryError(EngineError):
    """Engine failure wrapped with best-effort diagnostic hints."""

    def __init__(self, message: str, *, hints: dict[str, str] | None = None) -> None:
        self.hints = dict(hints or {})
        super().__init__(message)

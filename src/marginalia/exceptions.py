"""Error taxonomy for the comment checking pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Mapping


class MarginaliaError(RuntimeError):
    pass


class ConfigError(MarginaliaError):
    pass


class NotInitialised(MarginaliaError):
    """Raised when a language is used before its grammar and queries are loaded."""

    def __init__(self, language: str) -> None:
        super().__init__(f"language {language!r} has not been initialised")
        self.language = language


class GrammarLoadError(MarginaliaError):
    """A grammar library or one of its query patterns could not be loaded.

    ``searched_paths`` lists every location that was tried, in order, so the
    message is actionable without re-running with extra logging.
    """

    def __init__(
        self,
        language: str,
        reason: str,
        *,
        searched_paths: tuple[Path, ...] = (),
    ) -> None:
        detail = reason
        if searched_paths:
            joined = ", ".join(str(path) for path in searched_paths)
            detail = f"{reason} (searched: {joined})"
        super().__init__(f"failed to load grammar for {language!r}: {detail}")
        self.language = language
        self.reason = reason
        self.searched_paths = searched_paths


class ExtractionError(MarginaliaError):
    pass


class SpanOrderError(ExtractionError):
    pass


class PositionMappingError(MarginaliaError):
    pass


class ServiceError(MarginaliaError):
    pass


class ServiceUnreachable(ServiceError):
    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ServiceMalformed(ServiceError):
    pass


class StartupExhausted(MarginaliaError):
    """No strategy could bring up a checking service."""

    def __init__(self, attempts: tuple[str, ...]) -> None:
        summary = "; ".join(attempts) if attempts else "no strategies configured"
        super().__init__(f"unable to start a checking service: {summary}")
        self.attempts = attempts


class InvariantViolation(MarginaliaError):
    """Raised by ``never()`` when a path that must be unreachable is taken."""

    def __init__(self, reason: str, *, env: Mapping[str, object] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.env = dict(env or {})

"""Error taxonomy and exit codes for the startup pipeline.

Key Responsibilities:
    - Define one exception class per pipeline stage so callers can tell a
      startup misconfiguration from an application-level failure
    - Map every failure to exactly one process exit code
    - Render human readable cause chains for diagnostics

Collaborators:
    - Upstream: Stage implementations raise the stage specific subclasses
    - Downstream: :mod:`entrypoint.pipeline` converts them into exit codes and
      a single diagnostic emission

Side Effects:
    - None; helpers are pure

Thread Safety:
    - Thread-safe; exceptions are created per failure and never shared
"""

from __future__ import annotations

from enum import Enum, IntEnum
from pathlib import Path
from typing import Any

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================

__all__ = [
    "ApplicationError",
    "ArgumentError",
    "EntrypointError",
    "EnvironmentLoadError",
    "ExitCode",
    "LoggingInstallError",
    "Stage",
    "describe_cause_chain",
]


class Stage(str, Enum):
    """Pipeline stages that can produce a failure."""

    ENVIRONMENT = "environment"
    CONFIGURATION = "configuration"
    LOGGING = "logging"
    APPLICATION = "application"


class ExitCode(IntEnum):
    """Process exit codes, one per failure class (values follow sysexits.h)."""

    SUCCESS = 0
    APPLICATION_FAILURE = 1
    ARGUMENT_ERROR = 64
    LOGGING_ERROR = 70
    ENVIRONMENT_ERROR = 78
    INTERRUPTED = 130


# ==============================================================================
# HELPERS
# ==============================================================================


def describe_cause_chain(exc: BaseException) -> str:
    """Render ``outer: inner: innermost`` from an exception and its causes.

    Explicit causes (``raise ... from``) are followed first, implicit context
    otherwise. Repeated messages are collapsed so wrappers that reuse the
    message of the exception they wrap do not stutter.
    """
    parts: list[str] = []
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        message = str(current) or type(current).__name__
        if not parts or parts[-1] != message:
            parts.append(message)
        if current.__cause__ is not None:
            current = current.__cause__
        elif current.__suppress_context__:
            current = None
        else:
            current = current.__context__
    return ": ".join(parts)


# ==============================================================================
# EXCEPTIONS
# ==============================================================================


class EntrypointError(RuntimeError):
    """Base exception carrying the stage and exit code of a failure."""

    stage: Stage = Stage.APPLICATION
    exit_code: ExitCode = ExitCode.APPLICATION_FAILURE

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        """Initialise the exception.

        Args:
            message: Human readable error summary.
            detail: Optional longer description appended to diagnostics.
        """
        super().__init__(message)
        self.message = message
        self.detail = detail
        # set when the error wraps an exception its stage did not anticipate
        self.unexpected = False

    def diagnostic(self) -> str:
        """Return the single line reported to operators for this failure."""
        cause = describe_cause_chain(self)
        if self.detail and self.detail not in cause:
            cause = f"{cause} ({self.detail})"
        return f"{self.stage.value} stage failed: {cause}"

    def context(self) -> dict[str, Any]:
        """Structured fields attached to the log record for this failure."""
        payload: dict[str, Any] = {"stage": self.stage.value, "cause": describe_cause_chain(self)}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ArgumentError(EntrypointError):
    """Raised when command line input or resolved configuration is invalid."""

    stage = Stage.CONFIGURATION
    exit_code = ExitCode.ARGUMENT_ERROR


class EnvironmentLoadError(EntrypointError):
    """Raised when an environment definition file cannot be used."""

    stage = Stage.ENVIRONMENT
    exit_code = ExitCode.ENVIRONMENT_ERROR

    def __init__(
        self,
        message: str,
        *,
        path: Path | str | None = None,
        line: int | None = None,
        reason: str = "malformed",
        detail: str | None = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.path = Path(path) if path is not None else None
        self.line = line
        self.reason = reason

    @classmethod
    def malformed(cls, path: Path | str, line: int, content: str = "") -> EnvironmentLoadError:
        snippet = content.strip()
        detail = f"offending content: {snippet!r}" if snippet else None
        return cls(
            f"malformed line {line} in {path}", path=path, line=line, reason="malformed", detail=detail
        )

    @classmethod
    def missing(cls, path: Path | str) -> EnvironmentLoadError:
        return cls(f"environment file not found: {path}", path=path, reason="missing")

    def context(self) -> dict[str, Any]:
        payload = super().context()
        if self.path is not None:
            payload["path"] = str(self.path)
        if self.line is not None:
            payload["line"] = self.line
        payload["reason"] = self.reason
        return payload


class LoggingInstallError(EntrypointError):
    """Raised when the log sink is already installed or rejects its settings."""

    stage = Stage.LOGGING
    exit_code = ExitCode.LOGGING_ERROR


class ApplicationError(EntrypointError):
    """Failure reported by the user entry function itself."""

    stage = Stage.APPLICATION
    exit_code = ExitCode.APPLICATION_FAILURE

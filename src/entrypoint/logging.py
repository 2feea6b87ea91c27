"""Process-wide log sink installation with structlog.

Key Responsibilities:
    - Derive :class:`LogSettings` from the resolved configuration through
      independently overridable hooks
    - Install exactly one stdlib handler, rendered by structlog, per
      :class:`LogSinkGate`
    - Scrub sensitive fields from every record

Collaborators:
    - Upstream: :class:`entrypoint.pipeline.Entrypoint` installs the sink once
      the configuration is resolved
    - Downstream: Relies on ``logging`` and ``structlog``

Side Effects:
    - Adds a handler to the root logger and calls ``structlog.configure``

Thread Safety:
    - :meth:`LogSinkGate.install` holds a lock so two callers cannot both
      install; installation should still happen once during startup
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Protocol, TextIO, TypeVar, runtime_checkable

import structlog

__all__ = [
    "DEFAULT_SCRUB_FIELDS",
    "DefaultLoggingConfigurator",
    "InstallStatus",
    "LogFormat",
    "LogSettings",
    "LogSinkGate",
    "LoggingConfigurator",
    "ReinstallPolicy",
    "coerce_level",
    "get_logger",
]

_ConfigT = TypeVar("_ConfigT", contravariant=True)

DEFAULT_SCRUB_FIELDS: tuple[str, ...] = ("password", "token", "secret", "authorization")

# ==============================================================================
# SETTINGS
# ==============================================================================


class LogFormat(str, Enum):
    """Output format of the installed sink."""

    HUMAN = "human"
    JSON = "json"


class InstallStatus(str, Enum):
    INSTALLED = "installed"
    ALREADY_INSTALLED = "already_installed"


class ReinstallPolicy(str, Enum):
    """What a second installation attempt means to the pipeline."""

    REJECT = "reject"
    IGNORE = "ignore"


def coerce_level(level: int | str) -> int:
    """Translate ``"debug"``/``"INFO"``/``10`` into a stdlib level number.

    Raises:
        ValueError: If the name is not a known level.
    """
    if isinstance(level, bool):
        raise ValueError(f"invalid log level: {level!r}")
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level: {level!r}")
    return value


@dataclass(frozen=True, slots=True)
class LogSettings:
    """Severity threshold, output format and destination of the sink.

    ``writer`` of ``None`` means ``sys.stderr`` as it is at install time.
    """

    level: int = logging.INFO
    format: LogFormat = LogFormat.HUMAN
    writer: TextIO | None = None
    scrub_fields: tuple[str, ...] = field(default=DEFAULT_SCRUB_FIELDS)

    def __post_init__(self) -> None:
        object.__setattr__(self, "level", coerce_level(self.level))
        object.__setattr__(self, "format", LogFormat(self.format))
        object.__setattr__(self, "scrub_fields", tuple(self.scrub_fields))

    @property
    def level_name(self) -> str:
        return logging.getLevelName(self.level)


# ==============================================================================
# STRUCTLOG PROCESSORS
# ==============================================================================


def _structlog_scrubber(
    scrub_fields: Iterable[str] | None,
) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    """Create a processor that replaces configured fields with ``***``."""
    lower_fields = {field.lower() for field in scrub_fields or ()}

    def processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key in list(event_dict.keys()):
            if key.lower() in lower_fields:
                event_dict[key] = "***"
        return event_dict

    return processor


def _renderers(log_format: LogFormat) -> list[Any]:
    if log_format is LogFormat.JSON:
        return [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    return [structlog.dev.ConsoleRenderer(colors=False)]


# ==============================================================================
# INSTALL GATE
# ==============================================================================


class LogSinkGate:
    """Single-assignment cell guarding the process-wide log sink.

    The first :meth:`install` configures structlog and attaches one handler to
    the root logger. Every later call returns ``ALREADY_INSTALLED`` without
    touching the logging setup; :attr:`reinstall` tells the pipeline whether
    that is an error (``REJECT``) or an accepted no-op (``IGNORE``).
    """

    def __init__(self, *, reinstall: ReinstallPolicy = ReinstallPolicy.REJECT) -> None:
        self.reinstall = reinstall
        self._lock = threading.Lock()
        self._settings: LogSettings | None = None
        self._handler: logging.Handler | None = None
        self._previous_root_level: int | None = None

    @property
    def installed(self) -> bool:
        return self._settings is not None

    @property
    def settings(self) -> LogSettings | None:
        return self._settings

    def install(self, settings: LogSettings) -> InstallStatus:
        """Install the sink described by ``settings`` unless one exists."""
        with self._lock:
            if self._settings is not None:
                return InstallStatus.ALREADY_INSTALLED
            self._handler = self._configure(settings)
            self._settings = settings
        return InstallStatus.INSTALLED

    def _configure(self, settings: LogSettings) -> logging.Handler:
        shared: list[Any] = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _structlog_scrubber(settings.scrub_fields),
        ]
        formatter = structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[structlog.stdlib.ExtraAdder(), *shared],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *_renderers(settings.format),
            ],
        )
        handler = logging.StreamHandler(settings.writer or sys.stderr)
        handler.setFormatter(formatter)
        handler.setLevel(settings.level)

        root_logger = logging.getLogger()
        self._previous_root_level = root_logger.level
        root_logger.addHandler(handler)
        root_logger.setLevel(settings.level)

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                *shared,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.StackInfoRenderer(),
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=False,
        )
        return handler

    def reset(self) -> None:
        """Remove the installed sink and restore structlog defaults.

        Intended for test harnesses; a running process never uninstalls.
        """
        with self._lock:
            if self._handler is not None:
                root_logger = logging.getLogger()
                root_logger.removeHandler(self._handler)
                if self._previous_root_level is not None:
                    root_logger.setLevel(self._previous_root_level)
            self._handler = None
            self._settings = None
            self._previous_root_level = None
            structlog.reset_defaults()


# ==============================================================================
# STAGE CONTRACT
# ==============================================================================


@runtime_checkable
class LoggingConfigurator(Protocol[_ConfigT]):
    """Stage contract: describe the sink for a resolved configuration."""

    def log_settings(self, config: _ConfigT) -> LogSettings: ...

    def bypass_log_init(self, config: _ConfigT) -> bool: ...


class DefaultLoggingConfigurator(Generic[_ConfigT]):
    """Default logging stage: ``INFO``, human readable, on stderr.

    Each of level, format and writer has its own hook, so overriding one keeps
    the defaults of the others. Constructor keywords cover the common static
    cases without subclassing.
    """

    def __init__(
        self,
        *,
        level: int | str | None = None,
        format: LogFormat | str | None = None,
        writer: TextIO | None = None,
        bypass: bool = False,
        scrub_fields: Iterable[str] = DEFAULT_SCRUB_FIELDS,
    ) -> None:
        self._level = level
        self._format = LogFormat(format) if format is not None else None
        self._writer = writer
        self._bypass = bypass
        self._scrub_fields = tuple(scrub_fields)

    def log_level(self, config: _ConfigT) -> int | str:
        return self._level if self._level is not None else logging.INFO

    def log_format(self, config: _ConfigT) -> LogFormat:
        return self._format or LogFormat.HUMAN

    def log_writer(self, config: _ConfigT) -> TextIO | None:
        return self._writer

    def bypass_log_init(self, config: _ConfigT) -> bool:
        """Return ``True`` when the application installs logging itself."""
        return self._bypass

    def log_settings(self, config: _ConfigT) -> LogSettings:
        return LogSettings(
            level=self.log_level(config),
            format=self.log_format(config),
            writer=self.log_writer(config),
            scrub_fields=self._scrub_fields,
        )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the stdlib logger ``name``."""
    return structlog.stdlib.get_logger(name)

"""Startup pipeline orchestration.

Key Responsibilities:
    - Run environment loading, configuration resolution, logging installation
      and the user entry function strictly in that order
    - Track progress through :class:`PipelineState` and refuse out-of-order
      transitions
    - Convert the first failure into exactly one diagnostic and one exit code

Collaborators:
    - Upstream: Application ``main`` modules, usually through the
      :func:`entrypoint` decorator
    - Downstream: :mod:`entrypoint.environment`, :mod:`entrypoint.resolver`,
      :mod:`entrypoint.logging`; ``rich`` for diagnostics emitted before the
      log sink exists

Side Effects:
    - Exports the merged environment into ``os.environ`` once per process
    - Installs the process log sink through a :class:`LogSinkGate`
    - :meth:`Entrypoint.main` terminates the interpreter with ``sys.exit``

Thread Safety:
    - Not thread-safe; one pipeline runs once per process on the main thread
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================

import asyncio
import functools
import inspect
import logging
import sys
import typing
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Generic, TextIO, TypeVar

from rich.console import Console

from .environment import (
    DotEnvLoader,
    EnvironmentLoader,
    EnvironmentView,
    OverridePolicy,
    redact_environment,
)
from .errors import (
    ApplicationError,
    ArgumentError,
    EntrypointError,
    EnvironmentLoadError,
    ExitCode,
    LoggingInstallError,
)
from .logging import (
    DEFAULT_SCRUB_FIELDS,
    DefaultLoggingConfigurator,
    InstallStatus,
    LogFormat,
    LoggingConfigurator,
    LogSettings,
    LogSinkGate,
    ReinstallPolicy,
)
from .outcome import Failure, StageOutcome, Success, attempt
from .resolver import ConfigResolver, SettingsResolver
from .settings import EntrypointSettings

logger = logging.getLogger(__name__)

__all__ = ["Entrypoint", "PipelineRun", "PipelineState", "entrypoint"]

_ConfigT = TypeVar("_ConfigT", bound=EntrypointSettings)

# Sink shared by every Entrypoint that is not handed its own gate.
_PROCESS_SINK = LogSinkGate()

# ==============================================================================
# STATE MACHINE
# ==============================================================================


class PipelineState(str, Enum):
    START = "start"
    ENV_LOADED = "env_loaded"
    CONFIG_RESOLVED = "config_resolved"
    LOGGING_READY = "logging_ready"
    USER_CODE_RUNNING = "user_code_running"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.START: frozenset({PipelineState.ENV_LOADED, PipelineState.FAILED}),
    # COMPLETED here is the ``--help`` exit
    PipelineState.ENV_LOADED: frozenset(
        {PipelineState.CONFIG_RESOLVED, PipelineState.COMPLETED, PipelineState.FAILED}
    ),
    PipelineState.CONFIG_RESOLVED: frozenset({PipelineState.LOGGING_READY, PipelineState.FAILED}),
    PipelineState.LOGGING_READY: frozenset({PipelineState.USER_CODE_RUNNING, PipelineState.FAILED}),
    PipelineState.USER_CODE_RUNNING: frozenset({PipelineState.COMPLETED, PipelineState.FAILED}),
    PipelineState.COMPLETED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


@dataclass
class PipelineRun:
    """Record of one pipeline execution.

    Attributes:
        states: Every state visited, starting with ``START``.
        environment: Merged environment, once loaded.
        config: Resolved configuration, once validated.
        log_settings: Sink settings; ``None`` when initialization was bypassed.
        result: Return value of the entry function on success.
        failure: The failure that ended the run, if any.
        exit_code: Process exit code for this run.
    """

    states: list[PipelineState] = field(default_factory=lambda: [PipelineState.START])
    environment: EnvironmentView | None = None
    config: Any = None
    log_settings: LogSettings | None = None
    result: Any = None
    failure: Failure | None = None
    exit_code: ExitCode = ExitCode.SUCCESS

    @property
    def state(self) -> PipelineState:
        return self.states[-1]

    @property
    def logging_ready(self) -> bool:
        return PipelineState.LOGGING_READY in self.states

    def advance(self, state: PipelineState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid pipeline transition {self.state.value} -> {state.value}")
        self.states.append(state)


# ==============================================================================
# HELPERS
# ==============================================================================


def _infer_config_cls(function: Callable[..., Any]) -> type[EntrypointSettings]:
    """Read the configuration class from the annotation of the only parameter."""
    parameters = list(inspect.signature(function).parameters.values())
    if len(parameters) != 1:
        raise TypeError(
            f"entry function {function.__qualname__} must take exactly one parameter, "
            f"the resolved configuration"
        )
    try:
        hints = typing.get_type_hints(function)
    except NameError as exc:
        raise TypeError(
            f"cannot resolve annotations of {function.__qualname__}; pass config_cls explicitly"
        ) from exc
    config_cls = hints.get(parameters[0].name)
    if not (isinstance(config_cls, type) and issubclass(config_cls, EntrypointSettings)):
        raise TypeError(
            f"parameter '{parameters[0].name}' of {function.__qualname__} must be annotated "
            f"with an EntrypointSettings subclass, or pass config_cls explicitly"
        )
    return config_cls


def _fallback_console() -> Console:
    return Console(stderr=True, highlight=False, soft_wrap=True, emoji=False)


# ==============================================================================
# ORCHESTRATOR
# ==============================================================================


class Entrypoint(Generic[_ConfigT]):
    """Process entry point wrapping a user function.

    The builder owns one implementation per stage. Each can be replaced on its
    own with :meth:`with_environment`, :meth:`with_resolver` or
    :meth:`with_logging`; the others keep their defaults.

    Example::

        class Config(EntrypointSettings):
            name: str = "world"

        def main(config: Config) -> None:
            get_logger(__name__).info("hello", name=config.name)

        if __name__ == "__main__":
            Entrypoint(main).main()
    """

    def __init__(
        self,
        function: Callable[[_ConfigT], Any],
        config_cls: type[_ConfigT] | None = None,
        *,
        environment: EnvironmentLoader | None = None,
        resolver: ConfigResolver[_ConfigT] | None = None,
        log_configurator: LoggingConfigurator[_ConfigT] | None = None,
        gate: LogSinkGate | None = None,
        dump_environment: bool = True,
        console: Console | None = None,
    ) -> None:
        self.function = function
        self.config_cls = config_cls if config_cls is not None else _infer_config_cls(function)
        self.environment: EnvironmentLoader = environment or DotEnvLoader()
        self.resolver: ConfigResolver[_ConfigT] = resolver or SettingsResolver(self.config_cls)
        self.log_configurator: LoggingConfigurator[_ConfigT] = (
            log_configurator or DefaultLoggingConfigurator()
        )
        self.gate = gate if gate is not None else _PROCESS_SINK
        self.dump_environment = dump_environment
        self.console = console or _fallback_console()
        functools.update_wrapper(self, function)

    def __repr__(self) -> str:
        return f"Entrypoint({self.function.__qualname__}, config_cls={self.config_cls.__name__})"

    # ----------------------------------------------------------------------
    # Builder
    # ----------------------------------------------------------------------

    def with_environment(self, loader: EnvironmentLoader) -> Entrypoint[_ConfigT]:
        self.environment = loader
        return self

    def with_resolver(self, resolver: ConfigResolver[_ConfigT]) -> Entrypoint[_ConfigT]:
        self.resolver = resolver
        return self

    def with_logging(self, configurator: LoggingConfigurator[_ConfigT]) -> Entrypoint[_ConfigT]:
        self.log_configurator = configurator
        return self

    # ----------------------------------------------------------------------
    # Stages
    # ----------------------------------------------------------------------

    def _install_logging(self, config: _ConfigT) -> LogSettings | None:
        if self.log_configurator.bypass_log_init(config):
            logger.debug("log initialization bypassed; the application installs its own sink")
            return None
        try:
            settings = self.log_configurator.log_settings(config)
        except ValueError as exc:
            raise LoggingInstallError("invalid log settings") from exc

        status = self.gate.install(settings)
        if status is InstallStatus.ALREADY_INSTALLED:
            if self.gate.reinstall is ReinstallPolicy.REJECT:
                raise LoggingInstallError("log sink already installed for this process")
            logger.debug("log sink already installed; keeping the existing one")
            return self.gate.settings
        return settings

    def _report_environment(self, view: EnvironmentView, scrub_fields: Sequence[str]) -> None:
        for skipped in view.skipped:
            logger.warning(
                "skipped malformed line %d in %s: %s", skipped.line, skipped.path, skipped.content
            )
        if not (self.dump_environment and logger.isEnabledFor(logging.DEBUG)):
            return
        for key, value in sorted(redact_environment(view, scrub_fields).items()):
            logger.debug("env %s=%s", key, value)

    def _invoke(self, config: _ConfigT) -> Any:
        result = self.function(config)
        if inspect.iscoroutine(result):
            result = asyncio.run(result)
        return result

    # ----------------------------------------------------------------------
    # Outcome handling
    # ----------------------------------------------------------------------

    def _fail(self, run: PipelineRun, failure: Failure) -> PipelineRun:
        run.failure = failure
        run.exit_code = failure.error.exit_code
        self._emit(run, failure.error)
        run.advance(PipelineState.FAILED)
        return run

    def _emit(self, run: PipelineRun, error: EntrypointError) -> None:
        if not run.logging_ready:
            prog = getattr(self.resolver, "prog_name", None) or Path(sys.argv[0]).name or "entrypoint"
            self.console.print(
                f"{prog}: error: {error.diagnostic()}", markup=False, highlight=False, emoji=False
            )
            return
        exc_info = error.__cause__ if error.unexpected else None
        logger.error(error.diagnostic(), extra=error.context(), exc_info=exc_info)

    # ----------------------------------------------------------------------
    # Execution
    # ----------------------------------------------------------------------

    def execute(self, argv: Sequence[str] | None = None) -> PipelineRun:
        """Run every stage once and return the record of the run."""
        arguments = list(sys.argv[1:] if argv is None else argv)
        run = PipelineRun()

        loaded: StageOutcome[EnvironmentView] = attempt(
            EnvironmentLoadError, self.environment.load, arguments
        )
        if not loaded.ok:
            return self._fail(run, loaded)
        run.environment = loaded.value
        run.advance(PipelineState.ENV_LOADED)

        try:
            resolved: StageOutcome[_ConfigT] = attempt(
                ArgumentError, self.resolver.resolve, arguments, run.environment
            )
        except SystemExit as exc:
            if exc.code in (0, None):
                run.advance(PipelineState.COMPLETED)
                return run
            resolved = Failure(ArgumentError(f"argument parser exited with status {exc.code}"))
        if not resolved.ok:
            return self._fail(run, resolved)
        run.config = resolved.value
        run.advance(PipelineState.CONFIG_RESOLVED)

        installed: StageOutcome[LogSettings | None] = attempt(
            LoggingInstallError, self._install_logging, run.config
        )
        if not installed.ok:
            return self._fail(run, installed)
        run.log_settings = installed.value
        run.advance(PipelineState.LOGGING_READY)
        self._report_environment(
            run.environment,
            run.log_settings.scrub_fields if run.log_settings else DEFAULT_SCRUB_FIELDS,
        )
        logger.debug("setup complete; running %s", self.function.__qualname__)

        run.advance(PipelineState.USER_CODE_RUNNING)
        try:
            outcome: StageOutcome[Any] = attempt(ApplicationError, self._invoke, run.config)
        except KeyboardInterrupt:
            logger.warning("interrupted")
            run.exit_code = ExitCode.INTERRUPTED
            run.advance(PipelineState.FAILED)
            return run
        except SystemExit as exc:
            if exc.code not in (0, None):
                return self._fail(
                    run, Failure(ApplicationError(f"entry function exited with status {exc.code}"))
                )
            outcome = Success(None)
        if isinstance(outcome, Success) and isinstance(outcome.value, Failure):
            outcome = outcome.value
        if not outcome.ok:
            return self._fail(run, outcome)

        run.result = outcome.value.value if isinstance(outcome.value, Success) else outcome.value
        run.advance(PipelineState.COMPLETED)
        logger.debug("%s completed", self.function.__qualname__)
        return run

    def run(self, argv: Sequence[str] | None = None) -> int:
        """Run the pipeline and return the process exit code."""
        return int(self.execute(argv).exit_code)

    def __call__(self, argv: Sequence[str] | None = None) -> int:
        return self.run(argv)

    def main(self, argv: Sequence[str] | None = None) -> None:
        """Run the pipeline and terminate the process with its exit code."""
        sys.exit(self.run(argv))


# ==============================================================================
# DECORATOR
# ==============================================================================


def entrypoint(
    function: Callable[[Any], Any] | None = None,
    /,
    *,
    config_cls: type[EntrypointSettings] | None = None,
    env_files: Sequence[Path | str] = (),
    override_policy: OverridePolicy | str = OverridePolicy.PROCESS_WINS,
    strict_env: bool = False,
    tolerate_malformed_env: bool = False,
    env_file_option: str | None = None,
    log_level: int | str | None = None,
    log_format: LogFormat | str | None = None,
    log_writer: TextIO | None = None,
    bypass_log_init: bool = False,
    gate: LogSinkGate | None = None,
) -> Any:
    """Turn a function taking the resolved configuration into an :class:`Entrypoint`.

    Usable bare (``@entrypoint``) or with keywords
    (``@entrypoint(env_files=["local.env"], log_format="json")``).

    ``env_file_option`` names a command line option (such as ``"--env-file"``)
    whose values are loaded as further environment files; the configuration
    class declares the matching field, e.g. ``env_file: list[str] = []``.
    """

    def decorate(fn: Callable[[Any], Any]) -> Entrypoint[Any]:
        return Entrypoint(
            fn,
            config_cls,
            environment=DotEnvLoader(
                env_files,
                policy=OverridePolicy(override_policy),
                strict=strict_env,
                tolerate_malformed=tolerate_malformed_env,
                files_option=env_file_option,
            ),
            log_configurator=DefaultLoggingConfigurator(
                level=log_level,
                format=log_format,
                writer=log_writer,
                bypass=bypass_log_init,
            ),
            gate=gate,
        )

    if function is not None:
        return decorate(function)
    return decorate

"""Process startup pipeline for command line applications.

Key Responsibilities:
    - Load ``.env`` style files into the process environment
    - Resolve a frozen pydantic-settings configuration from arguments and
      the environment
    - Install one structlog-rendered log sink per process
    - Run the application function and map its outcome to an exit code

Collaborators:
    - Upstream: Application ``main`` modules
    - Downstream: ``python-dotenv``, ``pydantic-settings``, ``structlog``,
      ``rich``

Side Effects:
    - None on import; running an :class:`Entrypoint` mutates ``os.environ``
      and the root logger

Example:
    >>> from entrypoint import EntrypointSettings, entrypoint, get_logger
    >>> class Config(EntrypointSettings):
    ...     verbose: bool = False
    >>> @entrypoint
    ... def main(config: Config) -> None:
    ...     get_logger(__name__).info("started", verbose=config.verbose)
"""

from .environment import (
    DotEnvLoader,
    EnvironmentExportGate,
    EnvironmentLoader,
    EnvironmentView,
    ExportStatus,
    OverridePolicy,
    SkippedLine,
    load_environment,
    read_env_file,
    redact_environment,
)
from .errors import (
    ApplicationError,
    ArgumentError,
    EntrypointError,
    EnvironmentLoadError,
    ExitCode,
    LoggingInstallError,
    Stage,
    describe_cause_chain,
)
from .logging import (
    DefaultLoggingConfigurator,
    InstallStatus,
    LogFormat,
    LoggingConfigurator,
    LogSettings,
    LogSinkGate,
    ReinstallPolicy,
    get_logger,
)
from .outcome import Failure, StageOutcome, Success
from .pipeline import Entrypoint, PipelineRun, PipelineState, entrypoint
from .resolver import ConfigResolver, SettingsResolver
from .settings import EntrypointSettings

__all__ = [
    "ApplicationError",
    "ArgumentError",
    "ConfigResolver",
    "DefaultLoggingConfigurator",
    "DotEnvLoader",
    "Entrypoint",
    "EntrypointError",
    "EntrypointSettings",
    "EnvironmentExportGate",
    "EnvironmentLoadError",
    "EnvironmentLoader",
    "EnvironmentView",
    "ExitCode",
    "ExportStatus",
    "Failure",
    "InstallStatus",
    "LogFormat",
    "LogSettings",
    "LogSinkGate",
    "LoggingConfigurator",
    "LoggingInstallError",
    "OverridePolicy",
    "PipelineRun",
    "PipelineState",
    "ReinstallPolicy",
    "SettingsResolver",
    "SkippedLine",
    "Stage",
    "StageOutcome",
    "Success",
    "describe_cause_chain",
    "entrypoint",
    "get_logger",
    "load_environment",
    "read_env_file",
    "redact_environment",
]

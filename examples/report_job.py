"""Illustrative command line job built on the startup pipeline.

Run with ``python examples/report_job.py --output-dir /tmp/out --verbose``;
values missing from the command line are read from ``.env`` and
``report.env`` in the working directory, any file passed with
``--env-file``, then from the process environment.
"""

from __future__ import annotations

from pathlib import Path

from entrypoint import (
    ApplicationError,
    DefaultLoggingConfigurator,
    EntrypointSettings,
    entrypoint,
    get_logger,
)
from entrypoint.logging import LogFormat


class ReportConfig(EntrypointSettings):
    output_dir: Path = Path("reports")
    verbose: bool = False
    json_logs: bool = False
    env_file: list[str] = []


class ReportLogging(DefaultLoggingConfigurator):
    """Derive the sink from the job's own flags instead of static keywords."""

    def log_level(self, config: ReportConfig) -> str:
        return "debug" if config.verbose else "info"

    def log_format(self, config: ReportConfig) -> LogFormat:
        return LogFormat.JSON if config.json_logs else LogFormat.HUMAN


@entrypoint(env_files=["report.env"], env_file_option="--env-file")
def main(config: ReportConfig) -> None:
    logger = get_logger(__name__)
    if not config.output_dir.exists():
        raise ApplicationError(f"output directory {config.output_dir} does not exist")
    logger.info("report written", output_dir=str(config.output_dir))


main.with_logging(ReportLogging())


if __name__ == "__main__":
    main.main()

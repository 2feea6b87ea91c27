from __future__ import annotations

import json
import logging

import pytest

from entrypoint import (
    DefaultLoggingConfigurator,
    InstallStatus,
    LogFormat,
    LogSettings,
    get_logger,
)
from entrypoint.logging import coerce_level


def _records(stream) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


def test_second_install_is_a_no_op(gate, log_stream) -> None:
    root = logging.getLogger()
    before = len(root.handlers)

    first = gate.install(LogSettings(writer=log_stream))
    second = gate.install(LogSettings(level="debug", writer=log_stream))

    assert first is InstallStatus.INSTALLED
    assert second is InstallStatus.ALREADY_INSTALLED
    assert len(root.handlers) == before + 1
    assert gate.settings.level == logging.INFO


def test_json_sink_renders_one_object_per_record(gate, log_stream) -> None:
    gate.install(LogSettings(format=LogFormat.JSON, writer=log_stream))

    get_logger("worker").info("job started", job_id=7)

    [record] = _records(log_stream)
    assert record["event"] == "job started"
    assert record["job_id"] == 7
    assert record["level"] == "info"
    assert record["logger"] == "worker"
    assert "timestamp" in record


def test_stdlib_records_share_the_sink(gate, log_stream) -> None:
    gate.install(LogSettings(format="json", writer=log_stream))

    logging.getLogger("plain").warning("retry %d of %d", 1, 3)

    [record] = _records(log_stream)
    assert record["event"] == "retry 1 of 3"
    assert record["level"] == "warning"


def test_sensitive_fields_are_scrubbed(gate, log_stream) -> None:
    gate.install(LogSettings(format=LogFormat.JSON, writer=log_stream))

    get_logger("auth").info("login", token="abc123", user="ada")

    [record] = _records(log_stream)
    assert record["token"] == "***"
    assert record["user"] == "ada"


def test_records_below_threshold_are_dropped(gate, log_stream) -> None:
    gate.install(LogSettings(level="warning", format=LogFormat.JSON, writer=log_stream))

    logger = get_logger("threshold")
    logger.info("quiet")
    logger.error("loud")

    assert [record["event"] for record in _records(log_stream)] == ["loud"]


def test_human_format_is_plain_text(gate, log_stream) -> None:
    gate.install(LogSettings(writer=log_stream))

    get_logger("human").info("hello", count=2)

    output = log_stream.getvalue()
    assert "hello" in output
    assert "count=2" in output
    assert "\x1b[" not in output


def test_reset_removes_the_handler(gate, log_stream) -> None:
    root = logging.getLogger()
    before = len(root.handlers)
    gate.install(LogSettings(writer=log_stream))

    gate.reset()

    assert len(root.handlers) == before
    assert not gate.installed
    assert gate.install(LogSettings(writer=log_stream)) is InstallStatus.INSTALLED


@pytest.mark.parametrize(
    ("level", "expected"),
    [("debug", logging.DEBUG), ("INFO", logging.INFO), (" Warning ", logging.WARNING), (40, 40)],
)
def test_coerce_level_accepts_names_and_numbers(level, expected) -> None:
    assert coerce_level(level) == expected


@pytest.mark.parametrize("level", ["loud", True])
def test_coerce_level_rejects_unknown_values(level) -> None:
    with pytest.raises(ValueError):
        coerce_level(level)


def test_log_settings_reject_unknown_format() -> None:
    with pytest.raises(ValueError):
        LogSettings(format="xml")


def test_default_configurator_settings() -> None:
    settings = DefaultLoggingConfigurator().log_settings(object())

    assert settings.level == logging.INFO
    assert settings.format is LogFormat.HUMAN
    assert settings.writer is None


def test_overriding_one_hook_keeps_the_other_defaults(log_stream) -> None:
    class VerboseConfigurator(DefaultLoggingConfigurator):
        def log_level(self, config):
            return "debug" if config["verbose"] else "info"

    configurator = VerboseConfigurator(writer=log_stream)
    settings = configurator.log_settings({"verbose": True})

    assert settings.level_name == "DEBUG"
    assert settings.format is LogFormat.HUMAN
    assert settings.writer is log_stream
    assert configurator.bypass_log_init({"verbose": True}) is False

from __future__ import annotations

import io
import os
from pathlib import Path

import pytest
import structlog

from entrypoint import LogSinkGate, environment, pipeline


@pytest.fixture(autouse=True)
def _restore_process_environment():
    """Pipelines export into ``os.environ``; undo that after every test."""
    snapshot = dict(os.environ)
    yield
    os.environ.clear()
    os.environ.update(snapshot)


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path, monkeypatch):
    # default ``.env`` discovery starts from the working directory
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def _reset_process_state():
    yield
    pipeline._PROCESS_SINK.reset()
    environment._PROCESS_EXPORT.reset()
    structlog.reset_defaults()


@pytest.fixture
def gate():
    sink = LogSinkGate()
    yield sink
    sink.reset()


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def write_env(tmp_path):
    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write

"""Environment-file loading and merging.

Key Responsibilities:
    - Read ``.env`` style files through python-dotenv and reject malformed lines
      with their path and line number
    - Merge any number of files left to right, then combine the result with
      the process environment under an explicit :class:`OverridePolicy`
    - Publish the merged view into ``os.environ`` so subsystems that read the
      raw process environment observe the same values

Collaborators:
    - Upstream: :class:`entrypoint.pipeline.Entrypoint` runs the loader first
    - Downstream: :class:`entrypoint.resolver.SettingsResolver` reads the
      resulting :class:`EnvironmentView`

Side Effects:
    - Mutates ``os.environ`` at most once per process, guarded by an
      :class:`EnvironmentExportGate`; an explicit ``environ`` mapping is
      written on every exporting :func:`load_environment` call

Thread Safety:
    - Loading is not thread-safe and is meant to run during process startup;
      the export gate itself is lock-protected
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================

import argparse
import io
import logging
import os
import threading
from collections.abc import Iterable, Iterator, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import NoReturn, Protocol, runtime_checkable

from dotenv import dotenv_values, find_dotenv
from dotenv.parser import Binding, parse_stream

from .errors import EnvironmentLoadError
from .logging import DEFAULT_SCRUB_FIELDS

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_DOTENV_FILENAME",
    "DEFAULT_FILES_VARIABLE",
    "DotEnvLoader",
    "EnvironmentExportGate",
    "EnvironmentLoader",
    "EnvironmentView",
    "ExportStatus",
    "OverridePolicy",
    "SkippedLine",
    "load_environment",
    "read_env_file",
    "redact_environment",
]

DEFAULT_DOTENV_FILENAME = ".env"
DEFAULT_FILES_VARIABLE = "DOTENV_FILES"

# ==============================================================================
# DATA MODELS
# ==============================================================================


class OverridePolicy(str, Enum):
    """Which side wins when a file and the process define the same key."""

    FILE_WINS = "file_wins"
    PROCESS_WINS = "process_wins"


@dataclass(frozen=True, slots=True)
class SkippedLine:
    """A malformed line tolerated by a lenient load."""

    path: Path
    line: int
    content: str


class EnvironmentView(Mapping[str, str]):
    """Read-only merged environment produced by the loader.

    Attributes:
        sources: Files that contributed values, in merge order.
        policy: Policy used to combine file values with the process.
        skipped: Malformed lines that were tolerated instead of raising.
    """

    __slots__ = ("_values", "policy", "skipped", "sources")

    def __init__(
        self,
        values: Mapping[str, str] | None = None,
        *,
        sources: Sequence[Path] = (),
        policy: OverridePolicy = OverridePolicy.PROCESS_WINS,
        skipped: Sequence[SkippedLine] = (),
    ) -> None:
        self._values: dict[str, str] = dict(values or {})
        self.sources: tuple[Path, ...] = tuple(sources)
        self.policy = policy
        self.skipped: tuple[SkippedLine, ...] = tuple(skipped)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        sources = ", ".join(str(path) for path in self.sources) or "-"
        return f"EnvironmentView(keys={len(self)}, sources=[{sources}], policy={self.policy.value})"

    def export(self, environ: MutableMapping[str, str] | None = None) -> list[str]:
        """Write the view into ``environ`` (``os.environ`` by default).

        Under ``FILE_WINS`` differing values are overwritten; under
        ``PROCESS_WINS`` only keys the target does not define yet are added.

        Returns:
            The keys that were written.
        """
        target = os.environ if environ is None else environ
        written: list[str] = []
        for key, value in self._values.items():
            current = target.get(key)
            if current == value:
                continue
            if current is not None and self.policy is OverridePolicy.PROCESS_WINS:
                continue
            target[key] = value
            written.append(key)
        return written


class ExportStatus(str, Enum):
    EXPORTED = "exported"
    ALREADY_EXPORTED = "already_exported"


class EnvironmentExportGate:
    """Single-assignment cell guarding writes into the process environment.

    The first :meth:`export` publishes its view; every later call returns
    ``ALREADY_EXPORTED`` and leaves the target untouched, so a process
    environment is populated from env files exactly once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._view: EnvironmentView | None = None

    @property
    def exported(self) -> bool:
        return self._view is not None

    @property
    def view(self) -> EnvironmentView | None:
        """The view that was published, if any."""
        return self._view

    def export(
        self, view: EnvironmentView, environ: MutableMapping[str, str] | None = None
    ) -> ExportStatus:
        with self._lock:
            if self._view is not None:
                logger.debug(
                    "environment already exported from %r; skipping export of %r",
                    self._view,
                    view,
                )
                return ExportStatus.ALREADY_EXPORTED
            written = view.export(environ)
            self._view = view
        logger.debug("exported %d variable(s) into the process environment", len(written))
        return ExportStatus.EXPORTED

    def reset(self) -> None:
        """Forget the published view. Intended for test harnesses."""
        with self._lock:
            self._view = None


_PROCESS_EXPORT = EnvironmentExportGate()


# ==============================================================================
# FILE READING
# ==============================================================================


def _is_malformed(binding: Binding) -> bool:
    # a bare ``KEY`` without ``=`` parses in python-dotenv but is not a definition
    return binding.error or (binding.key is not None and binding.value is None)


def _line_number(binding: Binding) -> int:
    # the recorded line is where the reader stopped, before any leading blank lines
    text = binding.original.string
    leading = text[: len(text) - len(text.lstrip())]
    return binding.original.line + leading.count("\n")


def read_env_file(
    path: Path | str,
    *,
    tolerate_malformed: bool = False,
    interpolate: bool = True,
) -> tuple[dict[str, str], list[SkippedLine]]:
    """Read one environment file.

    Args:
        path: File to read.
        tolerate_malformed: Record malformed lines instead of raising.
        interpolate: Expand ``${VAR}`` references as python-dotenv does.

    Returns:
        The parsed values and the malformed lines that were skipped.

    Raises:
        EnvironmentLoadError: On the first malformed line unless tolerated, or
            when the file cannot be read.
    """
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise EnvironmentLoadError(
            f"cannot read environment file {source}", path=source, reason="unreadable"
        ) from exc

    skipped: list[SkippedLine] = []
    accepted: list[str] = []
    for binding in parse_stream(io.StringIO(text)):
        if not _is_malformed(binding):
            accepted.append(binding.original.string)
            continue
        if not tolerate_malformed:
            raise EnvironmentLoadError.malformed(source, _line_number(binding), binding.original.string)
        skipped.append(SkippedLine(source, _line_number(binding), binding.original.string.strip()))

    raw = dotenv_values(stream=io.StringIO("".join(accepted)), interpolate=interpolate)
    values = {key: value for key, value in raw.items() if value is not None}
    return values, skipped


# ==============================================================================
# MERGING
# ==============================================================================


def load_environment(
    paths: Iterable[Path | str],
    policy: OverridePolicy = OverridePolicy.PROCESS_WINS,
    *,
    strict: bool = False,
    tolerate_malformed: bool = False,
    environ: MutableMapping[str, str] | None = None,
    export: bool = True,
    interpolate: bool = True,
    export_gate: EnvironmentExportGate | None = None,
) -> EnvironmentView:
    """Merge environment files with the process environment.

    Files are merged left to right (later files win over earlier ones). The
    file-merged mapping is then combined with the process environment under
    ``policy``.

    Args:
        paths: Files in merge order.
        policy: ``FILE_WINS`` or ``PROCESS_WINS`` for keys defined on both sides.
        strict: Treat a missing file as an error instead of an empty source.
        tolerate_malformed: Skip malformed lines (recorded on the view).
        environ: Process environment to merge with and export into; defaults
            to ``os.environ``.
        export: Publish the merged view into ``environ``.
        interpolate: Expand ``${VAR}`` references inside files.
        export_gate: Gate that allows a single export. Defaults to the
            process-wide gate when exporting into ``os.environ``; an explicit
            ``environ`` mapping is written directly unless a gate is given.

    Raises:
        EnvironmentLoadError: Missing file in strict mode, unreadable file, or
            malformed content.
    """
    target = os.environ if environ is None else environ
    process_values = dict(target)

    file_values: dict[str, str] = {}
    sources: list[Path] = []
    skipped: list[SkippedLine] = []
    for raw_path in paths:
        path = Path(raw_path)
        if not path.is_file():
            if strict:
                raise EnvironmentLoadError.missing(path)
            logger.debug("environment file %s not found; treated as empty", path)
            continue
        values, bad_lines = read_env_file(
            path, tolerate_malformed=tolerate_malformed, interpolate=interpolate
        )
        logger.debug("read %d variable(s) from %s", len(values), path)
        file_values.update(values)
        sources.append(path)
        skipped.extend(bad_lines)

    if policy is OverridePolicy.FILE_WINS:
        merged = {**process_values, **file_values}
    else:
        merged = {**file_values, **process_values}

    view = EnvironmentView(merged, sources=sources, policy=policy, skipped=skipped)
    if not export:
        return view
    if export_gate is None and target is os.environ:
        export_gate = _PROCESS_EXPORT
    if export_gate is not None:
        export_gate.export(view, target)
    else:
        written = view.export(target)
        logger.debug("exported %d variable(s) into %s", len(written), type(target).__name__)
    return view


def redact_environment(
    environment: Mapping[str, str],
    scrub_fields: Iterable[str] = DEFAULT_SCRUB_FIELDS,
) -> dict[str, str]:
    """Return a copy with values of sensitive-looking keys replaced by ``***``."""
    tokens = [field.lower() for field in scrub_fields]
    return {
        key: "***" if any(token in key.lower() for token in tokens) else value
        for key, value in environment.items()
    }


# ==============================================================================
# STAGE CONTRACT
# ==============================================================================


@runtime_checkable
class EnvironmentLoader(Protocol):
    """Stage contract: produce the merged environment view.

    ``argv`` is the raw argument list so a loader can honour a command line
    option naming further files; loaders that do not need it ignore it.
    """

    def load(self, argv: Sequence[str] = ()) -> EnvironmentView: ...


class _FileOptionParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise EnvironmentLoadError(f"invalid command line: {message}", reason="arguments")


class DotEnvLoader:
    """Default environment stage.

    Reads ``.env`` found from the working directory upward, followed by any
    additional files, and merges them under the configured policy. Each
    decision is a separate method so a subclass can replace one (for example
    only :meth:`additional_dotenv_files`) and inherit the rest.

    Additional files come from three places, in this order: the ``files``
    given here, the ``files_variable`` environment variable (``os.pathsep``
    separated), and every ``files_option`` occurrence in the arguments. The
    variable may itself be set by ``.env``, so the file list is computed
    twice: once against the process environment, and again against the
    environment the first set of files produced.

    Args:
        files: Files merged after the default ``.env``.
        policy: Override policy for keys defined by both files and process.
        strict: Fail on missing files instead of treating them as empty.
        tolerate_malformed: Skip malformed lines instead of failing.
        use_default_dotenv: Search for ``.env`` from the working directory.
        environ: Process environment mapping; defaults to ``os.environ``.
        export: Publish the merged view into ``environ``.
        files_variable: Environment variable listing more files, or ``None``.
        files_option: Command line option listing more files (for example
            ``"--env-file"``), or ``None``. The configuration class must
            declare a matching field for the resolver to accept the option.
        export_gate: Gate passed through to :func:`load_environment`.
    """

    def __init__(
        self,
        files: Iterable[Path | str] = (),
        *,
        policy: OverridePolicy = OverridePolicy.PROCESS_WINS,
        strict: bool = False,
        tolerate_malformed: bool = False,
        use_default_dotenv: bool = True,
        environ: MutableMapping[str, str] | None = None,
        export: bool = True,
        files_variable: str | None = DEFAULT_FILES_VARIABLE,
        files_option: str | None = None,
        export_gate: EnvironmentExportGate | None = None,
    ) -> None:
        self._files = [Path(file) for file in files]
        self._policy = policy
        self._strict = strict
        self._tolerate_malformed = tolerate_malformed
        self._use_default_dotenv = use_default_dotenv
        self._environ = environ
        self._export = export
        self._files_variable = files_variable
        self._files_option = files_option
        self._export_gate = export_gate

    def default_dotenv(self) -> Path | None:
        """Conventional ``.env`` file, searched from the working directory upward."""
        if not self._use_default_dotenv:
            return None
        found = find_dotenv(DEFAULT_DOTENV_FILENAME, usecwd=True)
        return Path(found) if found else None

    def option_files(self, argv: Sequence[str]) -> list[Path]:
        """Files named by ``files_option`` in ``argv``; other arguments are ignored."""
        if not self._files_option or not argv:
            return []
        parser = _FileOptionParser(add_help=False, allow_abbrev=False)
        parser.add_argument(self._files_option, dest="files", action="append", default=[])
        known, _ = parser.parse_known_args(list(argv))
        return [Path(value) for value in known.files]

    def additional_dotenv_files(
        self, argv: Sequence[str] = (), environ: Mapping[str, str] | None = None
    ) -> list[Path]:
        """User supplied files, merged after the default one; order matters."""
        files = list(self._files)
        if self._files_variable:
            source = self._process_environ() if environ is None else environ
            listed = source.get(self._files_variable, "")
            files.extend(Path(item) for item in listed.split(os.pathsep) if item.strip())
        files.extend(self.option_files(argv))
        return files

    def dotenv_files(
        self, argv: Sequence[str] = (), environ: Mapping[str, str] | None = None
    ) -> list[Path]:
        files: list[Path] = []
        default = self.default_dotenv()
        if default is not None:
            files.append(default)
        for path in self.additional_dotenv_files(argv, environ):
            if path not in files:
                files.append(path)
        return files

    def override_policy(self) -> OverridePolicy:
        return self._policy

    def strict(self) -> bool:
        return self._strict

    def _process_environ(self) -> MutableMapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def _load(
        self,
        files: Sequence[Path],
        environ: MutableMapping[str, str] | None,
        *,
        export: bool,
    ) -> EnvironmentView:
        return load_environment(
            files,
            self.override_policy(),
            strict=self.strict(),
            tolerate_malformed=self._tolerate_malformed,
            environ=environ,
            export=export,
            export_gate=self._export_gate,
        )

    def load(self, argv: Sequence[str] = ()) -> EnvironmentView:
        files = self.dotenv_files(argv, self._process_environ())
        if not files:
            logger.debug("no environment files configured")
            return self._load(files, self._environ, export=self._export)

        # files read so far may define the variable naming more files
        first_pass = self._load(files, dict(self._process_environ()), export=False)
        final_files = self.dotenv_files(argv, first_pass)
        if final_files != files:
            logger.debug(
                "environment files %s named further files %s",
                [str(path) for path in files],
                [str(path) for path in final_files if path not in files],
            )
        return self._load(final_files, self._environ, export=self._export)

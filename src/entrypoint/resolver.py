"""Configuration resolution from arguments and the merged environment.

Key Responsibilities:
    - Parse process arguments through pydantic-settings' CLI source
    - Fill fields the arguments leave unset from the environment view
    - Validate into the application's frozen configuration class
    - Expose each step as a separate hook so an application can replace the
      derivation of one field group without rewriting the others

Collaborators:
    - Upstream: :class:`entrypoint.pipeline.Entrypoint` calls :meth:`resolve`
      with the raw arguments and the loader's :class:`EnvironmentView`
    - Downstream: ``pydantic`` for validation, ``pydantic_settings`` for CLI
      parsing

Side Effects:
    - ``--help`` makes argparse print usage and raise ``SystemExit(0)``
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================

import logging
import sys
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from pydantic import ValidationError
from pydantic_settings import CliSettingsSource, SettingsError

from .errors import ArgumentError
from .settings import EntrypointSettings, EnvironmentViewSource, deep_update

logger = logging.getLogger(__name__)

__all__ = ["ConfigResolver", "Derivation", "SettingsResolver", "summarize_validation_error"]

_ConfigT = TypeVar("_ConfigT", bound=EntrypointSettings)

Derivation = Callable[[Any], Any]

# ==============================================================================
# HELPERS
# ==============================================================================


def summarize_validation_error(exc: ValidationError) -> str:
    """Collapse a pydantic error into ``field: message; field: message``."""
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "<config>"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


# ==============================================================================
# STAGE CONTRACT
# ==============================================================================


@runtime_checkable
class ConfigResolver(Protocol[_ConfigT]):
    """Stage contract: turn arguments plus environment into the configuration."""

    def resolve(self, argv: Sequence[str], env: Mapping[str, str]) -> _ConfigT: ...


class SettingsResolver(Generic[_ConfigT]):
    """Default resolver built on pydantic-settings.

    Steps, each overridable on its own: :meth:`parse_arguments`,
    :meth:`environment_values`, :meth:`merge`, :meth:`build`, :meth:`derive`,
    :meth:`additional_configuration`.

    Args:
        config_cls: Subclass of :class:`EntrypointSettings` to produce.
        prog_name: Program name shown in usage messages.
        derivations: ``{field: callable(config) -> value}`` applied in order
            after validation, replacing only the named fields.
    """

    def __init__(
        self,
        config_cls: type[_ConfigT],
        *,
        prog_name: str | None = None,
        derivations: Mapping[str, Derivation] | None = None,
    ) -> None:
        if not (isinstance(config_cls, type) and issubclass(config_cls, EntrypointSettings)):
            raise TypeError(
                f"configuration class must subclass EntrypointSettings, got {config_cls!r}"
            )
        unknown = set(derivations or {}) - set(config_cls.model_fields)
        if unknown:
            raise ValueError(
                f"derivations name unknown field(s) of {config_cls.__name__}: {sorted(unknown)}"
            )
        self.config_cls = config_cls
        self.prog_name = prog_name or Path(sys.argv[0]).name or config_cls.__name__
        self.derivations: dict[str, Derivation] = dict(derivations or {})

    def parse_arguments(self, argv: Sequence[str]) -> dict[str, Any]:
        """Values explicitly given on the command line."""
        source = CliSettingsSource(
            self.config_cls, cli_prog_name=self.prog_name, cli_parse_args=list(argv)
        )
        return source()

    def environment_values(self, env: Mapping[str, str]) -> dict[str, Any]:
        """Values the environment view provides for the configuration's fields."""
        return EnvironmentViewSource(self.config_cls, env)()

    def merge(self, arguments: Mapping[str, Any], environment: Mapping[str, Any]) -> dict[str, Any]:
        """Combine both sources; arguments take precedence over the environment."""
        return deep_update(dict(environment), arguments)

    def build(self, values: Mapping[str, Any]) -> _ConfigT:
        return self.config_cls(**values)

    def derive(self, config: _ConfigT) -> _ConfigT:
        for field_name, derivation in self.derivations.items():
            config = config.model_copy(update={field_name: derivation(config)})
        return config

    def additional_configuration(self, config: _ConfigT) -> _ConfigT:
        """Last hook before the configuration is frozen into the pipeline."""
        return config

    def resolve(self, argv: Sequence[str], env: Mapping[str, str]) -> _ConfigT:
        try:
            arguments = self.parse_arguments(argv)
        except (SettingsError, ValueError) as exc:
            raise ArgumentError("invalid command line arguments") from exc
        try:
            environment = self.environment_values(env)
        except (SettingsError, ValueError) as exc:
            raise ArgumentError("invalid configuration in environment") from exc

        logger.debug(
            "resolving %s from %d argument value(s) and %d environment value(s)",
            self.config_cls.__name__,
            len(arguments),
            len(environment),
        )
        try:
            config = self.build(self.merge(arguments, environment))
        except ValidationError as exc:
            raise ArgumentError(
                f"invalid configuration: {summarize_validation_error(exc)}"
            ) from None

        try:
            config = self.derive(config)
        except ArgumentError:
            raise
        except Exception as exc:
            raise ArgumentError("failed to derive configuration fields") from exc
        return self.additional_configuration(config)

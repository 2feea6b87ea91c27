"""Base class for resolved configurations and the environment-view source."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic_settings import (
    BaseSettings,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

__all__ = ["EntrypointSettings", "EnvironmentViewSource", "deep_update"]


class EntrypointSettings(BaseSettings):
    """Base for the application's resolved configuration.

    Values come from command line arguments first and the merged environment
    second; the resolver supplies both as init arguments, so this class only
    keeps the init source. Instances are frozen once validated.
    """

    model_config = SettingsConfigDict(
        frozen=True,
        extra="ignore",
        cli_implicit_flags=True,
        cli_kebab_case=True,
        cli_exit_on_error=False,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings,)


class EnvironmentViewSource(EnvSettingsSource):
    """Environment settings source reading a given mapping instead of ``os.environ``.

    Field lookup is pydantic-settings' own: ``env_prefix``, validation
    aliases (including ``AliasChoices``), ``env_nested_delimiter``,
    ``env_ignore_empty``, case sensitivity and JSON decoding of complex
    fields all follow the model's ``model_config``.
    """

    def __init__(self, settings_cls: type[BaseSettings], environ: Mapping[str, str]) -> None:
        # read by _load_env_vars, which the base initializer calls
        self._view = environ
        super().__init__(settings_cls)

    def _load_env_vars(self) -> Mapping[str, str | None]:
        loaded: dict[str, str | None] = {}
        for key, value in self._view.items():
            if self.env_ignore_empty and value == "":
                continue
            if self.env_parse_none_str is not None and value == self.env_parse_none_str:
                value = None
            loaded[key if self.case_sensitive else key.lower()] = value
        return loaded


def deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``updates`` into ``target``; ``updates`` wins."""
    for key, value in updates.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            target[key] = deep_update(dict(current), value)
        else:
            target[key] = value
    return target

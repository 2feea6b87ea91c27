"""Tests for resolving configuration from arguments and the environment."""

from __future__ import annotations

import pytest
from pydantic import AliasChoices, BaseModel, Field, ValidationError
from pydantic_settings import SettingsConfigDict

from entrypoint import (
    ArgumentError,
    EntrypointSettings,
    ExitCode,
    SettingsResolver,
    describe_cause_chain,
)


class ServiceConfig(EntrypointSettings):
    name: str
    port: int = 8080
    verbose: bool = False
    max_workers: int = 1
    tags: list[str] = []


class DatabaseSettings(BaseModel):
    host: str = "localhost"
    pool_size: int = 5


class PrefixedConfig(EntrypointSettings):
    model_config = SettingsConfigDict(env_prefix="APP_")

    host: str = "127.0.0.1"
    database: DatabaseSettings = DatabaseSettings()


def test_arguments_alone_match_direct_construction() -> None:
    resolver = SettingsResolver(ServiceConfig, prog_name="svc")

    config = resolver.resolve(["--name", "api", "--port", "9000"], {})

    assert config == ServiceConfig(name="api", port=9000)


def test_environment_fills_fields_left_unset() -> None:
    resolver = SettingsResolver(ServiceConfig, prog_name="svc")

    config = resolver.resolve([], {"NAME": "from-env", "PORT": "9001"})

    assert config.name == "from-env"
    assert config.port == 9001


def test_environment_lookup_is_case_insensitive() -> None:
    config = SettingsResolver(ServiceConfig).resolve([], {"name": "lower"})

    assert config.name == "lower"


def test_arguments_take_precedence_over_environment() -> None:
    resolver = SettingsResolver(ServiceConfig, prog_name="svc")

    config = resolver.resolve(["--port", "1"], {"NAME": "env", "PORT": "2"})

    assert config.port == 1
    assert config.name == "env"


def test_boolean_flags_and_kebab_case_names() -> None:
    resolver = SettingsResolver(ServiceConfig, prog_name="svc")

    config = resolver.resolve(["--name", "x", "--verbose", "--max-workers", "4"], {})

    assert config.verbose is True
    assert config.max_workers == 4


def test_complex_environment_values_are_decoded_from_json() -> None:
    config = SettingsResolver(ServiceConfig).resolve([], {"NAME": "x", "TAGS": '["a", "b"]'})

    assert config.tags == ["a", "b"]


def test_invalid_json_in_environment_is_an_argument_error() -> None:
    with pytest.raises(ArgumentError) as excinfo:
        SettingsResolver(ServiceConfig).resolve([], {"NAME": "x", "TAGS": "[not json"})

    assert "tags" in describe_cause_chain(excinfo.value)


def test_prefixed_and_nested_environment_values() -> None:
    resolver = SettingsResolver(PrefixedConfig, prog_name="svc")

    config = resolver.resolve(
        [], {"APP_HOST": "0.0.0.0", "APP_DATABASE": '{"host": "db", "pool_size": 9}', "HOST": "x"}
    )

    assert config.host == "0.0.0.0"
    assert config.database == DatabaseSettings(host="db", pool_size=9)


def test_missing_required_field_is_an_argument_error() -> None:
    with pytest.raises(ArgumentError) as excinfo:
        SettingsResolver(ServiceConfig).resolve([], {})

    assert excinfo.value.exit_code == ExitCode.ARGUMENT_ERROR
    assert "name" in str(excinfo.value)


def test_malformed_value_names_the_field() -> None:
    with pytest.raises(ArgumentError) as excinfo:
        SettingsResolver(ServiceConfig).resolve(["--name", "x", "--port", "abc"], {})

    assert "port" in str(excinfo.value)


def test_unknown_flag_is_an_argument_error() -> None:
    with pytest.raises(ArgumentError) as excinfo:
        SettingsResolver(ServiceConfig, prog_name="svc").resolve(["--name", "x", "--bogus"], {})

    assert "--bogus" in excinfo.value.diagnostic()


def test_help_exits_with_status_zero(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        SettingsResolver(ServiceConfig, prog_name="svc").resolve(["--help"], {})

    assert excinfo.value.code == 0
    assert "--max-workers" in capsys.readouterr().out


def test_resolved_configuration_is_frozen() -> None:
    config = SettingsResolver(ServiceConfig).resolve(["--name", "x"], {})

    with pytest.raises(ValidationError):
        config.port = 1


def test_derivation_replaces_only_its_field() -> None:
    resolver = SettingsResolver(
        ServiceConfig, derivations={"tags": lambda config: [config.name, "derived"]}
    )

    config = resolver.resolve(["--name", "api", "--port", "7"], {})

    assert config.tags == ["api", "derived"]
    assert config.port == 7


def test_failing_derivation_is_an_argument_error() -> None:
    def explode(config):
        raise RuntimeError("lookup failed")

    resolver = SettingsResolver(ServiceConfig, derivations={"port": explode})

    with pytest.raises(ArgumentError) as excinfo:
        resolver.resolve(["--name", "x"], {})

    assert "lookup failed" in excinfo.value.diagnostic()


def test_derivation_for_unknown_field_is_rejected() -> None:
    with pytest.raises(ValueError):
        SettingsResolver(ServiceConfig, derivations={"nope": lambda config: 1})


def test_non_settings_class_is_rejected() -> None:
    with pytest.raises(TypeError):
        SettingsResolver(DatabaseSettings)  # type: ignore[type-var]


def test_additional_configuration_hook_runs_last() -> None:
    class UppercaseResolver(SettingsResolver):
        def additional_configuration(self, config):
            return config.model_copy(update={"name": config.name.upper()})

    config = UppercaseResolver(ServiceConfig).resolve(["--name", "api"], {})

    assert config.name == "API"


class AliasedConfig(EntrypointSettings):
    db_url: str = Field("default", validation_alias="DATABASE_URL")
    region: str = Field("eu", validation_alias=AliasChoices("REGION", "AWS_REGION"))


class NestedConfig(EntrypointSettings):
    model_config = SettingsConfigDict(env_nested_delimiter="__")

    database: DatabaseSettings = DatabaseSettings()


def test_validation_alias_is_read_from_environment() -> None:
    config = SettingsResolver(AliasedConfig).resolve([], {"DATABASE_URL": "pg://x"})

    assert config.db_url == "pg://x"


def test_alias_choices_use_the_first_present_variable() -> None:
    config = SettingsResolver(AliasedConfig).resolve([], {"AWS_REGION": "us-east-1"})

    assert config.region == "us-east-1"
    assert config.db_url == "default"


def test_nested_delimiter_builds_submodel_from_environment() -> None:
    config = SettingsResolver(NestedConfig).resolve(
        [], {"DATABASE__HOST": "db", "DATABASE__POOL_SIZE": "3"}
    )

    assert config.database == DatabaseSettings(host="db", pool_size=3)

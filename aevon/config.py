"""Application configuration: defaults, YAML file, environment and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterator, Mapping

import yaml

from aevon.rules import AggregationRule, FileSystemRuleRepository, RuleLoadError
from aevon.windows import parse_duration

ENV_PREFIX = "AEVON_"

DEFAULTS: dict[str, Any] = {
    "server.port": 8080,
    "server.host": "0.0.0.0",
    "server.max_body_size_mb": 1,
    "server.mode": "release",
    "database.type": "postgres",
    "database.dsn": "aevon.db",
    "database.max_open_conns": 25,
    "database.max_idle_conns": 25,
    "database.auto_migrate": True,
    "schema.source_type": "filesystem",
    "schema.path": "./schemas",
    "aggregation.config_dir": "./config/aggregations",
    "aggregation.require_rules": False,
    "aggregation.enabled": True,
    "aggregation.cron_interval": "2m",
    "aggregation.sweep_interval": "",
    "aggregation.batch_size": 50000,
    "aggregation.worker_count": 10,
    "aggregation.channel_buffer_size": 1024,
}

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


class ConfigError(Exception):
    """The configuration could not be loaded or is invalid."""


@dataclass
class ServerConfig:
    port: int = 8080
    host: str = "0.0.0.0"
    max_body_size_mb: int = 1
    mode: str = "release"


@dataclass
class DatabaseConfig:
    type: str = "postgres"
    dsn: str = "aevon.db"
    max_open_conns: int = 25
    max_idle_conns: int = 25
    auto_migrate: bool = True


@dataclass
class SchemaConfig:
    source_type: str = "filesystem"
    path: str = "./schemas"


@dataclass
class AggregationConfig:
    config_dir: str = "./config/aggregations"
    require_rules: bool = False
    enabled: bool = True
    cron_interval: str = "2m"
    sweep_interval: str = ""
    batch_size: int = 50000
    worker_count: int = 10
    channel_buffer_size: int = 1024

    def effective_cron_interval(self) -> str:
        """Return the cron interval, falling back to the legacy sweep interval."""
        if self.cron_interval:
            return self.cron_interval
        if self.sweep_interval:
            return self.sweep_interval
        return "2m"


@dataclass
class RuleLoadingConfig:
    config_dir: str = ""
    rules: list[AggregationRule] = field(default_factory=list)


@dataclass
class Config:
    """Top-level application configuration plus the loaded aggregation rules."""

    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    schema: SchemaConfig = field(default_factory=SchemaConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    rule_loading: RuleLoadingConfig = field(default_factory=RuleLoadingConfig)

    def validate(self) -> None:
        """Raise ConfigError if any setting is out of range or missing."""
        server = self.server
        if server.port <= 0 or server.port > 65535:
            raise ConfigError(f"invalid server.port {server.port} (must be 1-65535)")
        if not server.host.strip():
            raise ConfigError("server.host is required")
        if server.max_body_size_mb <= 0:
            raise ConfigError("server.max_body_size_mb must be > 0")
        if server.mode not in ("debug", "release"):
            raise ConfigError(f"invalid server.mode {server.mode!r} (must be debug or release)")

        database = self.database
        if not database.dsn.strip():
            raise ConfigError("database.dsn is required")
        if database.max_open_conns <= 0:
            raise ConfigError("database.max_open_conns must be > 0")
        if database.max_idle_conns <= 0:
            raise ConfigError("database.max_idle_conns must be > 0")
        if database.type and database.type != "postgres":
            raise ConfigError(f"unsupported database.type {database.type!r}")

        schema = self.schema
        if schema.source_type != "filesystem":
            raise ConfigError(f"unsupported schema.source_type {schema.source_type!r}")
        if not schema.path.strip():
            raise ConfigError("schema.path is required")
        try:
            os.stat(schema.path)
        except OSError as exc:
            raise ConfigError(f"schema.path {schema.path!r} is not accessible: {exc}") from exc

        aggregation = self.aggregation
        if not aggregation.config_dir.strip():
            raise ConfigError("aggregation.config_dir is required")
        interval_text = aggregation.effective_cron_interval()
        try:
            interval = parse_duration(interval_text)
        except ValueError as exc:
            raise ConfigError(
                f"invalid aggregation cron interval {interval_text!r}: {exc}"
            ) from exc
        if interval <= timedelta(0):
            raise ConfigError("aggregation cron interval must be > 0")
        if aggregation.batch_size <= 0:
            raise ConfigError("aggregation.batch_size must be > 0")
        if aggregation.worker_count <= 0:
            raise ConfigError("aggregation.worker_count must be > 0")
        if aggregation.channel_buffer_size < 0:
            raise ConfigError("aggregation.channel_buffer_size must be >= 0")


def _flatten(mapping: Mapping[str, Any], prefix: str = "") -> Iterator[tuple[str, Any]]:
    for key, value in mapping.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            yield from _flatten(value, f"{dotted}.")
        else:
            yield dotted, value


def _read_file(config_path: str) -> dict[str, Any]:
    try:
        text = Path(config_path).read_bytes()
        parsed = yaml.safe_load(text)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to load config file: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, Mapping):
        raise ConfigError("failed to load config file: expected a mapping")
    return dict(_flatten(parsed))


def _env_values(environ: Mapping[str, str]) -> dict[str, str]:
    return {
        name[len(ENV_PREFIX):].lower().replace("__", "."): value
        for name, value in environ.items()
        if name.startswith(ENV_PREFIX)
    }


def _to_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if value == "":
            return 0
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise ConfigError(f"failed to unmarshal config: {key}: cannot parse {value!r} as int")


def _to_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value == "":
            return False
        if value in _TRUE_WORDS:
            return True
        if value in _FALSE_WORDS:
            return False
    raise ConfigError(f"failed to unmarshal config: {key}: cannot parse {value!r} as bool")


def _to_str(value: Any, key: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise ConfigError(f"failed to unmarshal config: {key}: cannot use {value!r} as string")


_CONVERTERS = {int: _to_int, bool: _to_bool, str: _to_str}


def _build_section(cls: type, section: str, values: Mapping[str, Any]) -> Any:
    kwargs: dict[str, Any] = {}
    for item in fields(cls):
        key = f"{section}.{item.name}"
        if key not in values:
            continue
        # Every section field has a scalar default whose type is the field's type.
        kind = type(item.default)
        raw = values[key]
        kwargs[item.name] = kind() if raw is None else _CONVERTERS[kind](raw, key)
    return cls(**kwargs)


def load(config_path: str | None) -> Config:
    """Load config from defaults, an optional YAML file and AEVON_* variables.

    The result is validated and its aggregation rules are loaded.
    """
    values: dict[str, Any] = dict(DEFAULTS)
    if config_path:
        values.update(_read_file(config_path))
    values.update(_env_values(os.environ))

    cfg = Config(
        server=_build_section(ServerConfig, "server", values),
        database=_build_section(DatabaseConfig, "database", values),
        schema=_build_section(SchemaConfig, "schema", values),
        aggregation=_build_section(AggregationConfig, "aggregation", values),
    )
    cfg.validate()

    try:
        repo = FileSystemRuleRepository(cfg.aggregation.config_dir)
    except RuleLoadError as exc:
        raise ConfigError(f"failed to load aggregation rules: {exc}") from exc
    rules = repo.get_rules()
    if cfg.aggregation.enabled and cfg.aggregation.require_rules and not rules:
        raise ConfigError(f"no aggregation rules found in {cfg.aggregation.config_dir!r}")

    cfg.rule_loading = RuleLoadingConfig(config_dir=cfg.aggregation.config_dir, rules=rules)
    return cfg
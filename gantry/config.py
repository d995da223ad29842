"""
Config system - Layered typed configuration.

Merge precedence (later overrides earlier):
defaults < config files (YAML/JSON) < .env file < GANTRY_* environment < overrides
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from glob import glob
from pathlib import Path
from typing import Any, Dict, Optional, Type, get_args, get_origin, get_type_hints

import yaml
from dotenv import dotenv_values


class ConfigError(Exception):
    """Raised when configuration validation fails."""
    pass


# ============================================================================
# Typed sections
# ============================================================================

@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 9000
    mode: str = "dev"
    domain: str = ""
    trace_header: str = "X-Trace-Id"
    request_id_header: str = "X-Request-Id"
    # Set by an authenticating proxy; stamped into created_by/updated_by
    user_header: str = "X-User"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///:memory:"
    # Secondary databases addressable through Database.with_db(alias)
    aliases: Dict[str, str] = field(default_factory=dict)
    batch_size: int = 1000
    delete_batch_size: int = 10000
    default_limit: int = 1000
    slow_query_threshold: float = 0.5
    connect_retries: int = 3
    # Seeds without an id: "hash" (idempotent) or "always" (re-insert)
    seed_without_id: str = "hash"


@dataclass
class CacheConfig:
    # lru | lfu | expiring_lru | ttl | sharded | bytestore | redis
    backend: str = "lru"
    capacity: int = 100000
    shards: int = 16
    max_bytes: int = 128 * 1024 * 1024
    max_value_bytes: int = 1024 * 1024
    # Global expiration, seconds (expiring_lru, bytestore)
    ttl: float = 600.0
    # Per-entry default, seconds; 0 means never (ttl, redis)
    default_ttl: float = 0.0
    sweep_interval: float = 60.0
    serializer: str = "json"
    namespace: str = "gantry"
    redis_url: str = "redis://localhost:6379/0"
    trace: bool = True


@dataclass
class QueryConfig:
    default_size: int = 1000
    max_size: int = 1000
    max_depth: int = 99
    # Reads bypass the cache unless the request sends _nocache=false
    cache_by_default: bool = False
    datetime_layout: str = "%Y-%m-%d %H:%M:%S"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    journal: Optional[str] = None


@dataclass
class GantryConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ============================================================================
# Loader
# ============================================================================

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """Parse ``"500ms"``, ``"10m"``, ``"2h"`` or a plain number into seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _DURATION_RE.match(str(value).strip())
    if not match:
        raise ConfigError(f"Invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources.

    Environment variables use the ``GANTRY_`` prefix and ``__`` for nesting:
    ``GANTRY_CACHE__BACKEND=ttl`` sets ``cache.backend``.
    """

    def __init__(self, env_prefix: str = "GANTRY_"):
        self.env_prefix = env_prefix
        self.config_data: Dict[str, Any] = {}

    @classmethod
    def load(
        cls,
        paths: Optional[list[str]] = None,
        env_prefix: str = "GANTRY_",
        env_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
        use_environ: bool = True,
    ) -> "ConfigLoader":
        """
        Load configuration from multiple sources with proper merge strategy.

        Args:
            paths: Config file paths (glob patterns supported)
            env_prefix: Prefix for environment variables
            env_file: Path to .env file
            overrides: Manual overrides (highest precedence)
            use_environ: Whether to read ``os.environ``

        Returns:
            Configured ConfigLoader instance
        """
        loader = cls(env_prefix=env_prefix)

        if not paths and Path("gantry.yaml").exists():
            paths = ["gantry.yaml"]

        for pattern in paths or []:
            loader._load_from_files(pattern)

        if env_file:
            loader._load_env_file(env_file)

        if use_environ:
            loader._load_from_env()

        if overrides:
            loader._merge_dict(loader.config_data, overrides)

        return loader

    def _load_from_files(self, pattern: str):
        """Load config from JSON or YAML files."""
        matched = glob(pattern)
        if not matched and not any(ch in pattern for ch in "*?["):
            raise ConfigError(f"Config file not found: {pattern}")
        for path_str in sorted(matched):
            path = Path(path_str)
            if path.suffix == ".json":
                self._load_json_file(path)
            elif path.suffix in (".yaml", ".yml"):
                self._load_yaml_file(path)

    def _load_json_file(self, path: Path):
        with open(path) as f:
            self._merge_dict(self.config_data, json.load(f))

    def _load_yaml_file(self, path: Path):
        with open(path) as f:
            data = yaml.safe_load(f)
            if data:
                self._merge_dict(self.config_data, data)

    def _load_env_file(self, path: str):
        """Load ``GANTRY_*`` keys from a .env file."""
        env_path = Path(path)
        if not env_path.exists():
            return
        for key, value in dotenv_values(env_path).items():
            if key.startswith(self.env_prefix) and value is not None:
                self._set_nested(key, value)

    def _load_from_env(self):
        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _set_nested(self, key: str, value: str):
        """Convert GANTRY_CACHE__BACKEND to nested dict."""
        key = key[len(self.env_prefix):]
        parts = key.lower().split("__")

        current = self.config_data
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = self._parse_value(value)

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("{", "[")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _merge_dict(self, target: dict, source: dict):
        """Deep merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._merge_dict(target[key], value)
            else:
                target[key] = value

    def get(self, path: str, default: Any = None) -> Any:
        """Get config value by dot-separated path."""
        current = self.config_data
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def to_dict(self) -> dict:
        return self.config_data.copy()

    def build(self) -> GantryConfig:
        """Instantiate the typed configuration tree."""
        return self._instantiate_dataclass(GantryConfig, self.config_data)

    def _instantiate_dataclass(self, config_class: Type, data: dict):
        if not isinstance(data, dict):
            raise ConfigError(f"Config section for {config_class.__name__} must be a mapping")

        hints = get_type_hints(config_class)
        known = {f.name for f in fields(config_class)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(
                f"Unknown config keys for {config_class.__name__}: {', '.join(sorted(unknown))}"
            )

        kwargs = {}
        for field_info in fields(config_class):
            name = field_info.name
            field_type = hints[name]

            if name in data:
                value = data[name]
                if is_dataclass(field_type):
                    value = self._instantiate_dataclass(field_type, value)
                else:
                    value = self._coerce(name, value, field_type)
                kwargs[name] = value
            elif field_info.default is not MISSING:
                kwargs[name] = field_info.default
            elif field_info.default_factory is not MISSING:
                kwargs[name] = field_info.default_factory()
            else:
                raise ConfigError(f"Required config field '{name}' not provided")

        return config_class(**kwargs)

    def _coerce(self, name: str, value: Any, expected_type: Any) -> Any:
        import types

        origin = get_origin(expected_type)
        if origin is types.UnionType or str(origin) == "typing.Union":
            if value is None:
                return None
            expected_type = get_args(expected_type)[0]
            origin = get_origin(expected_type)

        if expected_type is float:
            if isinstance(value, str):
                return parse_duration(value)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)
        elif expected_type is int:
            if isinstance(value, int) and not isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lstrip("-").isdigit():
                return int(value)
        elif expected_type is str:
            if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                return str(value)
        elif expected_type is bool:
            if isinstance(value, bool):
                return value
        elif origin is not None:
            if isinstance(value, origin):
                return value
        elif isinstance(value, expected_type):
            return value

        raise ConfigError(
            f"Config field '{name}' expected {getattr(expected_type, '__name__', expected_type)}, "
            f"got {type(value).__name__}"
        )


# ============================================================================
# Process-wide configuration
# ============================================================================

_config: Optional[GantryConfig] = None


def get_config() -> GantryConfig:
    """Return the active configuration (defaults when never loaded)."""
    global _config
    if _config is None:
        _config = GantryConfig()
    return _config


def set_config(config: Optional[GantryConfig]) -> None:
    global _config
    _config = config


def load_config(
    paths: Optional[list[str]] = None,
    env_file: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> GantryConfig:
    """Load, build and activate the configuration."""
    config = ConfigLoader.load(paths=paths, env_file=env_file, overrides=overrides).build()
    set_config(config)
    return config


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install the standard log format on the ``gantry`` logger tree."""
    config = config or get_config().logging
    level = getattr(logging, str(config.level).upper(), logging.INFO)
    logging.basicConfig(level=level, format=config.format)
    logging.getLogger("gantry").setLevel(level)

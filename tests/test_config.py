"""
Tests for gantry.config: sources, precedence, typed build, durations.
"""

import json
import logging

import pytest
import yaml

from gantry.config import (
    ConfigError,
    ConfigLoader,
    GantryConfig,
    LoggingConfig,
    configure_logging,
    get_config,
    load_config,
    parse_duration,
    set_config,
)


class TestDefaults:
    def test_defaults(self):
        config = GantryConfig()
        assert config.server.port == 9000
        assert config.server.user_header == "X-User"
        assert config.database.url == "sqlite:///:memory:"
        assert config.cache.namespace == "gantry"
        assert config.cache.trace is True
        assert config.query.default_size == 1000
        assert config.query.max_depth == 99
        assert config.query.cache_by_default is False
        assert config.logging.journal is None

    def test_get_config_lazily_defaults(self):
        set_config(None)
        assert get_config() is get_config()
        assert isinstance(get_config(), GantryConfig)


class TestDurations:
    @pytest.mark.parametrize(
        "value, seconds",
        [("500ms", 0.5), ("30s", 30.0), ("10m", 600.0), ("2h", 7200.0), (3, 3.0), (1.5, 1.5)],
    )
    def test_parse(self, value, seconds):
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["soon", "10 minutes", True])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_duration(value)


class TestSources:
    def test_yaml_then_json(self, tmp_path):
        (tmp_path / "a.yaml").write_text(yaml.safe_dump({"cache": {"backend": "ttl", "capacity": 10}}))
        (tmp_path / "b.json").write_text(json.dumps({"cache": {"capacity": 20}}))
        loader = ConfigLoader.load([str(tmp_path / "a.yaml"), str(tmp_path / "b.json")], use_environ=False)
        assert loader.get("cache.backend") == "ttl"
        assert loader.get("cache.capacity") == 20
        assert loader.get("cache.missing", "d") == "d"

    def test_glob(self, tmp_path):
        (tmp_path / "10-base.yml").write_text("server:\n  port: 1\n")
        (tmp_path / "20-local.yml").write_text("server:\n  port: 2\n")
        loader = ConfigLoader.load([str(tmp_path / "*.yml")], use_environ=False)
        assert loader.get("server.port") == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            ConfigLoader.load([str(tmp_path / "nope.yaml")], use_environ=False)
        assert ConfigLoader.load([str(tmp_path / "*.yaml")], use_environ=False).to_dict() == {}

    def test_default_file_in_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "gantry.yaml").write_text("server:\n  mode: prod\n")
        assert ConfigLoader.load(use_environ=False).get("server.mode") == "prod"

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("GANTRY_CACHE__BACKEND", "redis")
        monkeypatch.setenv("GANTRY_QUERY__MAX_SIZE", "50")
        monkeypatch.setenv("GANTRY_QUERY__CACHE_BY_DEFAULT", "yes")
        monkeypatch.setenv("GANTRY_DATABASE__ALIASES", '{"logs": "sqlite:///:memory:"}')
        config = ConfigLoader.load().build()
        assert config.cache.backend == "redis"
        assert config.query.max_size == 50
        assert config.query.cache_by_default is True
        assert config.database.aliases == {"logs": "sqlite:///:memory:"}

    def test_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("GANTRY_SERVER__PORT=8080\nGANTRY_CACHE__TTL=1.5\nOTHER=1\n")
        loader = ConfigLoader.load(env_file=str(env), use_environ=False)
        assert loader.to_dict() == {"server": {"port": 8080}, "cache": {"ttl": 1.5}}

    def test_missing_env_file_ignored(self, tmp_path):
        loader = ConfigLoader.load(env_file=str(tmp_path / ".env"), use_environ=False)
        assert loader.to_dict() == {}

    def test_precedence(self, tmp_path, monkeypatch):
        (tmp_path / "c.yaml").write_text("server:\n  host: file\n  port: 1\n")
        monkeypatch.setenv("GANTRY_SERVER__HOST", "env")
        loader = ConfigLoader.load([str(tmp_path / "c.yaml")], overrides={"server": {"port": 3}})
        assert loader.get("server.host") == "env"
        assert loader.get("server.port") == 3


class TestBuild:
    def test_typed_tree(self):
        loader = ConfigLoader.load(
            overrides={
                "cache": {"ttl": "10m", "default_ttl": 5, "backend": "bytestore"},
                "database": {"slow_query_threshold": "250ms", "aliases": {"logs": "sqlite:///logs.db"}},
                "logging": {"journal": "spans.jsonl"},
            },
            use_environ=False,
        )
        config = loader.build()
        assert config.cache.ttl == 600.0
        assert config.cache.default_ttl == 5.0
        assert config.database.slow_query_threshold == 0.25
        assert config.database.aliases["logs"] == "sqlite:///logs.db"
        assert config.logging.journal == "spans.jsonl"
        assert config.query.max_size == 1000

    def test_unknown_key(self):
        loader = ConfigLoader.load(overrides={"cache": {"backnd": "lru"}}, use_environ=False)
        with pytest.raises(ConfigError) as exc:
            loader.build()
        assert "backnd" in str(exc.value)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"server": {"port": "high"}},
            {"query": {"cache_by_default": "maybe"}},
            {"database": {"aliases": ["logs"]}},
            {"cache": "lru"},
        ],
    )
    def test_bad_types(self, overrides):
        with pytest.raises(ConfigError):
            ConfigLoader.load(overrides=overrides, use_environ=False).build()

    def test_numeric_strings_coerced(self):
        config = ConfigLoader.load(overrides={"server": {"port": "8081", "host": 0}}, use_environ=False).build()
        assert config.server.port == 8081
        assert config.server.host == "0"


class TestActivation:
    def test_load_config_activates(self, tmp_path):
        path = tmp_path / "gantry.yaml"
        path.write_text("query:\n  default_size: 25\n")
        config = load_config([str(path)])
        assert get_config() is config
        assert get_config().query.default_size == 25

    def test_configure_logging(self):
        configure_logging(LoggingConfig(level="debug"))
        try:
            assert logging.getLogger("gantry").level == logging.DEBUG
        finally:
            logging.getLogger("gantry").setLevel(logging.NOTSET)

"""Tests for the ingestion registry module."""

import tempfile
from pathlib import Path

import pytest
import yaml

from asp_catalog.core.enums import IdCase
from asp_catalog.core.errors import ConfigError
from asp_catalog.ingestion.registry import (
    GlobalConfig,
    ProductIdRule,
    SourceConfig,
    SourceRegistry,
    get_default_registry,
    reset_default_registry,
)


class TestProductIdRule:
    """Tests for ProductIdRule."""

    def test_from_dict(self) -> None:
        """Test creating a rule from config."""
        rule = ProductIdRule.from_dict({"pattern": r"^(\d+)([a-z]+)(\d+)$", "replace": r"\1\2-\3"})
        assert rule.replace == r"\1\2-\3"

    def test_missing_keys(self) -> None:
        """Test a rule without a replacement is a config error."""
        with pytest.raises(ConfigError):
            ProductIdRule.from_dict({"pattern": "x"})


class TestSourceConfig:
    """Tests for SourceConfig."""

    def test_from_dict_minimal(self) -> None:
        """Test creating with minimal data."""
        source = SourceConfig.from_dict({"name": "MGS", "parser": "html"})

        assert source.name == "MGS"
        assert source.enabled is True
        assert source.list_urls == []
        assert source.request_delay_seconds is None
        assert source.id_case == IdCase.UPPER

    def test_from_dict_full(self) -> None:
        """Test creating with all fields."""
        source = SourceConfig.from_dict(
            {
                "name": "FANZA",
                "parser": "json_api",
                "enabled": False,
                "list_urls": ["https://api.example.com/list?page=1"],
                "detail_url": "https://api.example.com/item?cid={id}",
                "request_delay_seconds": 0.5,
                "id_case": "lower",
                "product_id_rules": [{"pattern": "^a", "replace": "b"}],
                "title_denylist": ["^FANZA$"],
                "parser_config": {"items_path": "result.items"},
            }
        )

        assert source.enabled is False
        assert source.request_delay_seconds == 0.5
        assert source.id_case == IdCase.LOWER
        assert source.product_id_rules[0].pattern == "^a"
        assert source.parser_config["items_path"] == "result.items"

    def test_missing_parser(self) -> None:
        """Test a source without a parser is rejected."""
        with pytest.raises(ConfigError):
            SourceConfig.from_dict({"name": "MGS"})

    def test_detail_url_for(self) -> None:
        """Test the detail URL template is filled in."""
        source = SourceConfig(name="MGS", parser="html", detail_url="https://example.com/p/{id}/")
        assert source.detail_url_for("259LUXU-1010") == "https://example.com/p/259LUXU-1010/"

    def test_detail_url_missing(self) -> None:
        """Test a missing template is a config error."""
        with pytest.raises(ConfigError):
            SourceConfig(name="MGS", parser="html").detail_url_for("1")


class TestGlobalConfig:
    """Tests for GlobalConfig."""

    def test_defaults(self) -> None:
        """Test default values."""
        config = GlobalConfig.from_dict(None)
        assert config.request_delay_seconds == 2.0
        assert config.retry.max_retries == 3
        assert config.storage.enabled is False

    def test_nested_sections(self) -> None:
        """Test retry and storage sections are parsed."""
        config = GlobalConfig.from_dict(
            {
                "user_agent": "Bot/2.0",
                "retry": {"max_retries": 5, "initial_delay": 0.5},
                "storage": {"enabled": True, "base_path": "/srv/raw"},
            }
        )
        assert config.user_agent == "Bot/2.0"
        assert config.retry.max_retries == 5
        assert config.retry.initial_delay == 0.5
        assert config.storage.enabled is True
        assert config.storage.base_path == "/srv/raw"


class TestSourceRegistry:
    """Tests for SourceRegistry."""

    @pytest.fixture
    def config_file(self):
        """Write a small sources file."""
        data = {
            "global": {"request_delay_seconds": 1.5},
            "sources": [
                {"name": "MGS", "parser": "html", "request_delay_seconds": 3.0},
                {"name": "FANZA", "parser": "json_api"},
                {"name": "SOKMIL", "parser": "html", "enabled": False},
            ],
        }
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "sources.yaml"
            path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")
            yield path

    def test_load_config(self, config_file: Path) -> None:
        """Test loading sources from YAML."""
        registry = SourceRegistry()
        registry.load_config(config_file)

        assert [s.name for s in registry.list_sources()] == ["MGS", "FANZA", "SOKMIL"]
        assert [s.name for s in registry.list_enabled_sources()] == ["MGS", "FANZA"]
        assert registry.config_path == config_file.resolve()

    def test_load_missing_file(self) -> None:
        """Test a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            SourceRegistry().load_config("/nonexistent/sources.yaml")

    def test_get_source(self, config_file: Path) -> None:
        """Test looking up a source by name."""
        registry = SourceRegistry()
        registry.load_config(config_file)

        assert registry.get_source("FANZA").parser == "json_api"
        assert registry.get_source("UNKNOWN") is None

    def test_request_delay_for(self, config_file: Path) -> None:
        """Test per-source delay overrides the global one."""
        registry = SourceRegistry()
        registry.load_config(config_file)

        assert registry.request_delay_for(registry.get_source("MGS")) == 3.0
        assert registry.request_delay_for(registry.get_source("FANZA")) == 1.5

    def test_load_dict_replaces_sources(self) -> None:
        """Test reloading drops previously loaded sources."""
        registry = SourceRegistry()
        registry.load_dict({"sources": [{"name": "A", "parser": "html"}]})
        registry.load_dict({"sources": [{"name": "B", "parser": "html"}]})

        assert [s.name for s in registry.list_sources()] == ["B"]


class TestDefaultRegistry:
    """Tests for the default registry helpers."""

    def test_env_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test SOURCES_CONFIG_PATH selects the config file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "sources.yaml"
            path.write_text(
                yaml.safe_dump({"sources": [{"name": "ENV", "parser": "html"}]}), encoding="utf-8"
            )
            monkeypatch.setenv("SOURCES_CONFIG_PATH", str(path))
            reset_default_registry()
            try:
                registry = get_default_registry()
                assert registry.get_source("ENV") is not None
                assert get_default_registry() is registry
            finally:
                reset_default_registry()

    def test_bundled_config_loads(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the bundled sources file parses."""
        monkeypatch.delenv("SOURCES_CONFIG_PATH", raising=False)
        reset_default_registry()
        try:
            registry = get_default_registry()
            names = [s.name for s in registry.list_sources()]
            assert {"MGS", "FANZA", "SOKMIL"} <= set(names)
        finally:
            reset_default_registry()

"""
Source Registry Module
======================

Manages ASP source configurations loaded from YAML files. Sources define
which endpoints are crawled, which parser reads them, how their product
ids are normalized, and which titles mark a placeholder page.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from asp_catalog.core.enums import IdCase
from asp_catalog.core.errors import ConfigError
from asp_catalog.ingestion.crawler import RetryOptions
from asp_catalog.ingestion.storage import StorageConfig


@dataclass
class ProductIdRule:
    """A regex rewrite applied to a source-native product id."""

    pattern: str
    replace: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProductIdRule:
        """Create from dictionary."""
        if "pattern" not in data or "replace" not in data:
            raise ConfigError(f"Product id rule needs 'pattern' and 'replace': {data}")
        return cls(pattern=str(data["pattern"]), replace=str(data["replace"]))


@dataclass
class SourceConfig:
    """Configuration for a single ASP."""

    name: str
    parser: str
    enabled: bool = True
    description: str = ""
    list_urls: list[str] = field(default_factory=list)
    detail_url: str = ""
    request_delay_seconds: float | None = None
    currency: str = "JPY"
    is_subscription: bool = False
    product_id_rules: list[ProductIdRule] = field(default_factory=list)
    id_case: IdCase = IdCase.UPPER
    title_denylist: list[str] = field(default_factory=list)
    description_denylist: list[str] = field(default_factory=list)
    parser_config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceConfig:
        """Create from dictionary."""
        try:
            name = data["name"]
            parser = data["parser"]
        except KeyError as e:
            raise ConfigError(f"Source entry is missing required key {e}") from e

        delay = data.get("request_delay_seconds")
        return cls(
            name=name,
            parser=parser,
            enabled=data.get("enabled", True),
            description=data.get("description", ""),
            list_urls=data.get("list_urls", []),
            detail_url=data.get("detail_url", ""),
            request_delay_seconds=float(delay) if delay is not None else None,
            currency=data.get("currency", "JPY"),
            is_subscription=bool(data.get("is_subscription", False)),
            product_id_rules=[ProductIdRule.from_dict(r) for r in data.get("product_id_rules", [])],
            id_case=IdCase(data.get("id_case", IdCase.UPPER.value)),
            title_denylist=data.get("title_denylist", []),
            description_denylist=data.get("description_denylist", []),
            parser_config=data.get("parser_config", {}),
        )

    def detail_url_for(self, source_product_id: str) -> str:
        """Build the detail URL for one product."""
        if not self.detail_url:
            raise ConfigError(f"Source '{self.name}' has no detail_url template")
        return self.detail_url.format(id=source_product_id)


@dataclass
class GlobalConfig:
    """Global configuration settings."""

    user_agent: str = "ASPCatalog/0.1"
    request_timeout: float = 30.0
    request_delay_seconds: float = 2.0
    retry: RetryOptions = field(default_factory=RetryOptions)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GlobalConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(
            user_agent=data.get("user_agent", "ASPCatalog/0.1"),
            request_timeout=float(data.get("request_timeout", 30.0)),
            request_delay_seconds=float(data.get("request_delay_seconds", 2.0)),
            retry=RetryOptions.from_dict(data.get("retry")),
            storage=StorageConfig.from_dict(data.get("storage")),
        )


class SourceRegistry:
    """
    Registry for managing ASP source configurations.

    Loads source definitions from a YAML file and provides methods
    to query them.
    """

    def __init__(self) -> None:
        self._sources: dict[str, SourceConfig] = {}
        self._global_config: GlobalConfig = GlobalConfig()
        self._config_path: Path | None = None

    @property
    def global_config(self) -> GlobalConfig:
        """Get global configuration."""
        return self._global_config

    @property
    def config_path(self) -> Path | None:
        """Path of the loaded YAML file, if any."""
        return self._config_path

    def load_config(self, config_path: Path | str) -> None:
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the sources.yaml file
        """
        config_path = Path(config_path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        self.load_dict(data)
        self._config_path = config_path

    def load_dict(self, data: dict[str, Any]) -> None:
        """Load configuration from an already-parsed mapping."""
        self._global_config = GlobalConfig.from_dict(data.get("global"))

        self._sources.clear()
        for source_data in data.get("sources", []):
            source = SourceConfig.from_dict(source_data)
            self._sources[source.name] = source

    def get_source(self, name: str) -> SourceConfig | None:
        """
        Get a source configuration by name.

        Args:
            name: ASP name (e.g. "MGS")

        Returns:
            SourceConfig if found, None otherwise
        """
        return self._sources.get(name)

    def list_sources(self) -> list[SourceConfig]:
        """Get all registered sources."""
        return list(self._sources.values())

    def list_enabled_sources(self) -> list[SourceConfig]:
        """Get all enabled sources."""
        return [s for s in self._sources.values() if s.enabled]

    def request_delay_for(self, source: SourceConfig) -> float:
        """Politeness delay between requests to a source."""
        if source.request_delay_seconds is not None:
            return source.request_delay_seconds
        return self._global_config.request_delay_seconds


# Global registry instance
_default_registry: SourceRegistry | None = None


def get_default_registry() -> SourceRegistry:
    """
    Get the default source registry instance.

    Loads configuration from the path specified in SOURCES_CONFIG_PATH
    environment variable, or falls back to config/sources.yaml.

    Returns:
        The global SourceRegistry instance
    """
    global _default_registry

    if _default_registry is None:
        _default_registry = SourceRegistry()

        config_path = os.environ.get("SOURCES_CONFIG_PATH")
        if config_path:
            path = Path(config_path)
        else:
            module_dir = Path(__file__).parent
            project_root = module_dir.parent.parent
            path = project_root / "config" / "sources.yaml"

        if path.exists():
            _default_registry.load_config(path)

    return _default_registry


def reset_default_registry() -> None:
    """Reset the default registry (useful for testing)."""
    global _default_registry
    _default_registry = None

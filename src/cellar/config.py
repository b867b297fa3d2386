"""⚙️ Configuration - Settings, catalog definitions and commit retry policy.

Configuration is always carried as an explicit ``dict[str, str]``. The
environment and the YAML catalog file are only read on the driver when a
loader is constructed; once built, a loader ships its properties verbatim.

Catalog file (``~/.cellar.yaml`` or ``$CELLAR_CONFIG``)::

    catalogs:
      prod:
        type: sql
        uri: /data/catalog.db
        warehouse: s3://warehouse/
        s3.endpoint: http://localhost:9000
        s3.force-virtual-addressing: "false"
      scratch:
        type: path
        warehouse: /tmp/warehouse
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Table property keys
COMMIT_NUM_RETRIES = "commit.retry.num-retries"
COMMIT_MIN_WAIT_MS = "commit.retry.min-wait-ms"
COMMIT_MAX_WAIT_MS = "commit.retry.max-wait-ms"
COMMIT_TOTAL_TIMEOUT_MS = "commit.retry.total-timeout-ms"

# Format-specific key patterns; a format only ever sees keys matching its own
PARQUET_CONFIG_PATTERN = r".*parquet.*"
ORC_CONFIG_PATTERN = r"^orc\..*"


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(env_prefix="CELLAR_", case_sensitive=False)

    config: Path = Field(default=Path("~/.cellar.yaml"))
    default_catalog: str = Field(default="default")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings from environment."""
    return Settings()


class CatalogDefinition(BaseModel):
    """One entry of the ``catalogs`` section of the catalog file."""

    type: str = Field(description="Catalog type: path, sql or custom")
    properties: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CatalogDefinition":
        """Split ``type`` from the remaining keys, stringifying values."""
        data = dict(data)
        catalog_type = data.pop("type", None)
        if catalog_type is None:
            raise ValueError("Catalog definition is missing 'type'")
        return cls(
            type=str(catalog_type),
            properties={str(k): _stringify(v) for k, v in data.items()},
        )


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def load_catalog_definition(name: str, path: Path | str | None = None) -> CatalogDefinition:
    """Load a named catalog definition from the YAML catalog file.

    Args:
        name: Catalog name under ``catalogs:``
        path: Catalog file (default: ``Settings.config``)

    Raises:
        FileNotFoundError: If the catalog file does not exist
        KeyError: If the catalog is not defined
    """
    path = Path(path or get_settings().config).expanduser()
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    catalogs = data.get("catalogs", {})
    if name not in catalogs:
        raise KeyError(
            f"Catalog '{name}' not found in {path}. "
            f"Available catalogs: {sorted(catalogs)}"
        )
    return CatalogDefinition.from_mapping(catalogs[name])


def filter_properties(properties: Mapping[str, str], pattern: str) -> dict[str, str]:
    """Return the subset of properties whose key matches ``pattern``."""
    regex = re.compile(pattern)
    return {k: v for k, v in properties.items() if regex.search(k)}


def property_as_int(properties: Mapping[str, str], key: str, default: int) -> int:
    value = properties.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Property {key} must be an integer, got {value!r}") from exc


class CommitRetryConfig(BaseModel):
    """Retry policy for optimistic commit conflicts."""

    num_retries: int = Field(default=4, ge=0, description="Retries after the first attempt")
    min_wait_ms: int = Field(default=100, ge=0)
    max_wait_ms: int = Field(default=60_000, ge=0)
    total_timeout_ms: int = Field(default=1_800_000, ge=0)

    @property
    def max_attempts(self) -> int:
        return self.num_retries + 1

    @classmethod
    def from_properties(cls, properties: Mapping[str, str]) -> "CommitRetryConfig":
        """Read the policy from table properties, falling back to defaults."""
        defaults = cls()
        return cls(
            num_retries=property_as_int(properties, COMMIT_NUM_RETRIES, defaults.num_retries),
            min_wait_ms=property_as_int(properties, COMMIT_MIN_WAIT_MS, defaults.min_wait_ms),
            max_wait_ms=property_as_int(properties, COMMIT_MAX_WAIT_MS, defaults.max_wait_ms),
            total_timeout_ms=property_as_int(
                properties, COMMIT_TOTAL_TIMEOUT_MS, defaults.total_timeout_ms
            ),
        )

"""Unified configuration schema for worksync.

Defines Pydantic models for the YAML config structure with dedicated
sections for each remote backend, sync tuning and logging, plus helpers
that flatten it into the ``Config`` dataclass consumed at runtime.

Usage:
    from worksync.config_schema import (
        UnifiedConfig, build_config, flatten_config, to_config,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_config(unified, cli_overrides={"provider": "azure"})
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from .config import Config
from .models import ConflictStrategy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class GitHubConfig(BaseModel):
    """GitHub Issues connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    token: str | None = Field(default=None, description="GitHub token")
    repository: str | None = Field(
        default=None, description="Target repository as owner/repo"
    )
    api_url: str | None = Field(
        default=None, description="REST API root (GitHub Enterprise)"
    )

    model_config = {"frozen": True}


class AzureConfig(BaseModel):
    """Azure DevOps Boards connection settings."""

    organization: str | None = Field(
        default=None, description="Azure DevOps organisation"
    )
    project: str | None = Field(default=None, description="Project name")
    pat: str | None = Field(
        default=None, description="Personal access token"
    )
    base_url: str | None = Field(
        default=None, description="Service root (Azure DevOps Server)"
    )

    model_config = {"frozen": True}


class SyncSettings(BaseModel):
    """Engine tuning.  Defaults match the ``Config`` dataclass."""

    provider: Literal["github", "azure"] | None = Field(
        default=None, description="Active remote backend"
    )
    state_dir: str = Field(
        default=".worksync", description="Directory holding sync maps"
    )
    conflict_strategy: ConflictStrategy = Field(
        default=ConflictStrategy.MANUAL,
        description="local, remote, newest, manual or merge",
    )
    max_concurrent: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum in-flight items per batch (1-100)",
    )
    rate_limit_threshold: int = Field(
        default=10,
        ge=0,
        description="Suspend all workers when remaining quota drops below",
    )
    max_retries: int = Field(default=3, ge=0, le=20)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30_000, ge=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    read_timeout: float = Field(default=60.0, gt=0)
    avg_item_latency_ms: float = Field(
        default=500.0,
        ge=0,
        description="Per-item latency assumed by dry-run estimates",
    )
    freshness_window_seconds: int = Field(default=3600, ge=0)
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    azure: AzureConfig = Field(default_factory=AzureConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapters: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------

# Section field -> Config field
_GITHUB_FIELDS = {
    "token": "github_token",
    "repository": "github_repository",
    "api_url": "github_api_url",
}
_AZURE_FIELDS = {
    "organization": "azure_org",
    "project": "azure_project",
    "pat": "azure_pat",
    "base_url": "azure_base_url",
}


def flatten_config(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the YAML sections into ``Config`` field names.

    Only explicitly set values are returned, so the result can be passed
    to ``load_config(yaml_fallbacks=...)`` without masking env vars with
    schema defaults.
    """
    flat: dict[str, Any] = {}
    for section, names in (
        (unified.github, _GITHUB_FIELDS),
        (unified.azure, _AZURE_FIELDS),
    ):
        for key, value in section.model_dump().items():
            if value is not None:
                flat[names[key]] = value

    sync = unified.sync
    for key in sync.model_fields_set:
        value = getattr(sync, key)
        if value is None:
            continue
        if isinstance(value, ConflictStrategy):
            value = value.value
        flat[key] = value
    return flat


def to_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Convert a ``UnifiedConfig`` into the ``Config`` dataclass,
    applying CLI overrides on top.

    The precedence applied here is:
        CLI override > unified config value > dataclass default

    Environment variables are NOT consulted; use ``load_config()`` for
    the full precedence chain.

    Returns:
        ``Config`` instance (NOT validated; caller should run
        ``validate_config()`` separately if needed).
    """
    values = flatten_config(unified)
    for key, value in (cli_overrides or {}).items():
        if value is not None:
            values[key] = value
    return Config(**values)

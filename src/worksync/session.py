"""Session management: wire config, adapter, store and orchestrator together."""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .config import Config, load_config
from .config_loader import (
    discover_config_files,
    load_hierarchical_config,
)
from .config_schema import build_config, flatten_config
from .core.rate_limit import RateLimitGate
from .errors import AuthError
from .models import BatchResult
from .remote.base import RemoteAdapter
from .remote.factory import create_adapter
from .sync.batch import BatchOptions, batch_run
from .sync.engine import LocalStore, SyncOrchestrator
from .sync.resolver import MergeFn, create_resolver
from .sync.state import SyncMappingStore

logger = logging.getLogger(__name__)


@dataclass
class SyncSession:
    """Everything a caller needs to run syncs against one backend."""

    config: Config
    adapter: RemoteAdapter
    store: SyncMappingStore
    orchestrator: SyncOrchestrator

    async def run(
        self, items: Iterable[Any], operation: str, **overrides: Any
    ) -> BatchResult:
        """Run a batch with options derived from the session config."""
        options = BatchOptions.from_config(self.config, **overrides)
        return await batch_run(self.orchestrator, items, operation, options)


@asynccontextmanager
async def sync_session(
    config_overrides: dict[str, Any] | None = None,
    local_store: LocalStore | None = None,
    merge_fn: MergeFn | None = None,
) -> AsyncIterator[SyncSession]:
    """
    Manage the startup and shutdown of a sync session.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present (as fallback values)
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Build the adapter, load the sync map and validate credentials
    - Fail fast if the remote rejects the credentials

    Args:
        config_overrides: Optional dict with values from the CLI (provider,
            token, repository, insecure, debug)
        local_store: Local entity storage handed to the orchestrator
        merge_fn: Merge hook for the ``merge`` conflict strategy

    Yields:
        The initialised ``SyncSession``

    Raises:
        RuntimeError: If configuration is invalid.
        AuthError: If the remote rejects the credentials.
    """
    try:
        # .env first so ${VAR} interpolation in YAML can use its values
        load_dotenv()

        yaml_fallbacks: dict[str, Any] | None = None
        sources = []
        config_files = discover_config_files()
        if config_files:
            raw = load_hierarchical_config()
            yaml_fallbacks = flatten_config(build_config(raw))
            sources.append(f"config file: {config_files[0]}")

        overrides = config_overrides or {}
        config = load_config(
            provider=overrides.get("provider"),
            token=overrides.get("token"),
            repository=overrides.get("repository"),
            insecure=overrides.get("insecure", False),
            debug=overrides.get("debug", False),
            yaml_fallbacks=yaml_fallbacks,
        )

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        logger.info("Configuration loaded from: %s", ", ".join(sources))
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise RuntimeError(f"Configuration error: {e}") from e

    adapter = create_adapter(config)
    store = SyncMappingStore(Path(config.state_dir), adapter.remote_kind)
    store.load()

    orchestrator = SyncOrchestrator(
        adapter,
        store,
        resolver=create_resolver(config.conflict_strategy, merge_fn),
        local_store=local_store,
        rate_gate=RateLimitGate(threshold=config.rate_limit_threshold),
        freshness_window=timedelta(seconds=config.freshness_window_seconds),
    )

    logger.info("Validating %s credentials...", adapter.remote_kind)
    try:
        await orchestrator.authenticate()
    except AuthError as e:
        logger.error("Authentication failed: %s", e)
        raise

    logger.info(
        "Sync session ready (provider=%s, strategy=%s, max_concurrent=%d)",
        config.provider,
        config.conflict_strategy,
        config.max_concurrent,
    )
    yield SyncSession(config, adapter, store, orchestrator)

    logger.info("Sync session closed")

"""Build the configured remote adapter.

The active provider is an explicit configuration value; there is no
auto-detection from the working directory.
"""

from __future__ import annotations

import logging

from ..config import Config
from .azure import AzureBoardsAdapter
from .base import RemoteAdapter
from .github import GitHubIssuesAdapter

logger = logging.getLogger(__name__)


def create_adapter(config: Config) -> RemoteAdapter:
    """Instantiate the adapter for ``config.provider``.

    Raises:
        ValueError: If the provider is not supported.
    """
    match config.provider:
        case "github":
            owner, repo = config.github_owner_repo
            adapter: RemoteAdapter = GitHubIssuesAdapter(
                owner,
                repo,
                config.github_token,
                api_url=config.github_api_url,
                timeout=config.timeout,
                insecure=config.insecure,
            )
        case "azure":
            adapter = AzureBoardsAdapter(
                config.azure_org,
                config.azure_project,
                config.azure_pat,
                base_url=config.azure_base_url,
                timeout=config.timeout,
                insecure=config.insecure,
            )
        case _:
            raise ValueError(f"Unsupported provider: {config.provider}")

    logger.debug("Using %s remote adapter", adapter.remote_kind)
    return adapter

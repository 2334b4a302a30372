"""Remote adapters: GitHub Issues and Azure DevOps Boards."""

from .azure import AzureBoardsAdapter
from .base import ItemFilter, RemoteAdapter
from .factory import create_adapter
from .github import GitHubIssuesAdapter
from .mapping import AZURE_MAPPING, GITHUB_MAPPING, MAPPINGS, StatusMapping

__all__ = [
    "AZURE_MAPPING",
    "AzureBoardsAdapter",
    "GITHUB_MAPPING",
    "GitHubIssuesAdapter",
    "ItemFilter",
    "MAPPINGS",
    "RemoteAdapter",
    "StatusMapping",
    "create_adapter",
]

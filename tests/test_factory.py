"""Tests for adapter construction from configuration."""

import pytest

from worksync.config import Config
from worksync.remote.azure import AzureBoardsAdapter
from worksync.remote.factory import create_adapter
from worksync.remote.github import GitHubIssuesAdapter


class TestCreateAdapter:
    def test_github(self, mock_config):
        adapter = create_adapter(mock_config)
        assert isinstance(adapter, GitHubIssuesAdapter)
        assert adapter.remote_kind == "github"
        assert adapter._http.base_url == "https://api.github.com"

    def test_github_enterprise_and_timeouts(self):
        config = Config(
            provider="github",
            github_token="t",
            github_repository="acme/roadmap",
            github_api_url="https://ghe.example.com/api/v3",
            connect_timeout=1.0,
            read_timeout=2.0,
            insecure=True,
        )
        adapter = create_adapter(config)
        assert adapter._http.base_url == "https://ghe.example.com/api/v3"
        assert adapter._http.timeout == (1.0, 2.0)
        assert adapter._http.insecure

    def test_azure(self):
        config = Config(
            provider="azure",
            azure_org="contoso",
            azure_project="Roadmap",
            azure_pat="pat",
        )
        adapter = create_adapter(config)
        assert isinstance(adapter, AzureBoardsAdapter)
        assert adapter.remote_kind == "azure"
        assert adapter._http.base_url == "https://dev.azure.com/contoso"

    def test_unsupported(self):
        with pytest.raises(ValueError, match="Unsupported provider"):
            create_adapter(Config(provider="jira"))

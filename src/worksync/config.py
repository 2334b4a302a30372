"""Runtime configuration for worksync.

Reads remote credentials and engine tuning from CLI args, environment
variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    WORKSYNC_PROVIDER: Active backend, ``github`` or ``azure`` (default: github)
    GITHUB_TOKEN: GitHub token (required for github)
    GITHUB_REPOSITORY: Target repository as ``owner/repo`` (required for github)
    GITHUB_API_URL: REST API root (optional, GitHub Enterprise)
    AZURE_DEVOPS_ORG: Azure DevOps organisation (required for azure)
    AZURE_DEVOPS_PROJECT: Azure DevOps project (required for azure)
    AZURE_DEVOPS_PAT: Azure DevOps personal access token (required for azure)
    AZURE_DEVOPS_URL: Service root (optional, Azure DevOps Server)
    WORKSYNC_MAX_CONCURRENT: Max in-flight batch items (optional, default: 10)
    WORKSYNC_STATE_DIR: Directory holding sync maps (optional, default: .worksync)
    WORKSYNC_CONFLICT_STRATEGY: Conflict strategy (optional, default: manual)
    WORKSYNC_INSECURE: Skip SSL verification (optional, default: false)
    WORKSYNC_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

from .models import ConflictStrategy

logger = logging.getLogger(__name__)

PROVIDERS = ("github", "azure")


@dataclass
class Config:
    provider: str = "github"
    github_token: str = ""
    github_repository: str = ""
    github_api_url: str = "https://api.github.com"
    azure_org: str = ""
    azure_project: str = ""
    azure_pat: str = ""
    azure_base_url: str = "https://dev.azure.com"
    insecure: bool = False
    debug: bool = False
    state_dir: str = ".worksync"
    conflict_strategy: str = "manual"
    max_concurrent: int = 10
    rate_limit_threshold: int = 10
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    avg_item_latency_ms: float = 500.0
    freshness_window_seconds: int = 3600

    @property
    def timeout(self) -> tuple[float, float]:
        """``(connect, read)`` timeout passed to the adapters."""
        return (self.connect_timeout, self.read_timeout)

    @property
    def github_owner_repo(self) -> tuple[str, str]:
        owner, _, repo = self.github_repository.partition("/")
        return owner, repo


def _validate_url(name: str, url: str) -> str:
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid {name} '{url}': must start with http:// or https://"
        )
    if not urlparse(url).hostname:
        raise ValueError(f"Invalid {name} '{url}': URL must include a hostname")
    return url.removesuffix("/")


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Only the credentials of the active provider are required.

    Raises:
        ValueError: If a value is malformed or a required credential is empty.
    """
    config.provider = config.provider.strip().lower()
    if config.provider not in PROVIDERS:
        raise ValueError(
            f"Unknown provider '{config.provider}': "
            f"must be one of {', '.join(PROVIDERS)}"
        )

    if config.provider == "github":
        config.github_api_url = _validate_url(
            "GitHub API URL", config.github_api_url
        )
        if not config.github_token.strip():
            raise ValueError(
                "GitHub token cannot be empty. Set GITHUB_TOKEN environment variable."
            )
        owner, repo = config.github_owner_repo
        if not owner or not repo or "/" in repo:
            raise ValueError(
                f"Invalid GitHub repository '{config.github_repository}': "
                "expected owner/repo. Set GITHUB_REPOSITORY environment variable."
            )
    else:
        config.azure_base_url = _validate_url(
            "Azure DevOps URL", config.azure_base_url
        )
        for value, var in (
            (config.azure_org, "AZURE_DEVOPS_ORG"),
            (config.azure_project, "AZURE_DEVOPS_PROJECT"),
            (config.azure_pat, "AZURE_DEVOPS_PAT"),
        ):
            if not value.strip():
                raise ValueError(
                    f"{var} cannot be empty. Set {var} environment variable."
                )

    try:
        ConflictStrategy(config.conflict_strategy)
    except ValueError:
        raise ValueError(
            f"Invalid conflict strategy '{config.conflict_strategy}': must be one of "
            + ", ".join(s.value for s in ConflictStrategy)
        ) from None

    if config.max_delay_ms < config.base_delay_ms:
        raise ValueError(
            f"max_delay_ms ({config.max_delay_ms}) must be >= "
            f"base_delay_ms ({config.base_delay_ms})"
        )

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_int_env(key: str, low: int, high: int) -> int | None:
    """Return a bounded int from env var, or None if unset."""
    raw = os.getenv(key)
    if raw is None:
        return None
    message = f"Invalid {key} '{raw}': must be a number between {low} and {high}"
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(message) from None
    if not (low <= value <= high):
        raise ValueError(message)
    return value


def load_config(
    provider: str | None = None,
    token: str | None = None,
    repository: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        provider: Override active provider.
        token: Override the active provider's token (GitHub token or PAT).
        repository: Override GitHub repository (``owner/repo``).
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict from ``flatten_config()``, keyed by
            ``Config`` field names.  Used when CLI arg and env var are unset.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If a required value is missing or malformed after
            checking all sources.
    """
    fb = dict(yaml_fallbacks or {})
    defaults = Config()

    def pick(cli: str | None, env_key: str, field: str) -> str:
        value = cli or os.getenv(env_key) or fb.get(field)
        if value is None:
            return getattr(defaults, field)
        return str(value).strip()

    final_provider = pick(provider, "WORKSYNC_PROVIDER", "provider").lower()

    # --- Credentials: CLI > env > YAML ---

    github_token = pick(
        token if final_provider == "github" else None,
        "GITHUB_TOKEN",
        "github_token",
    )
    azure_pat = pick(
        token if final_provider == "azure" else None,
        "AZURE_DEVOPS_PAT",
        "azure_pat",
    )

    # --- Boolean fields: CLI > env > YAML > default ---

    if insecure:
        final_insecure = True
    else:
        env_insecure = _get_bool_env("WORKSYNC_INSECURE")
        final_insecure = (
            env_insecure
            if env_insecure is not None
            else bool(fb.get("insecure", False))
        )

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("WORKSYNC_DEBUG")
        final_debug = (
            env_debug if env_debug is not None else bool(fb.get("debug", False))
        )

    # --- Numeric fields: env > YAML > default ---

    max_concurrent = _get_int_env("WORKSYNC_MAX_CONCURRENT", 1, 100)
    if max_concurrent is None:
        max_concurrent = int(fb.get("max_concurrent", defaults.max_concurrent))

    tuning = {
        key: type(getattr(defaults, key))(fb[key])
        for key in (
            "rate_limit_threshold",
            "max_retries",
            "base_delay_ms",
            "max_delay_ms",
            "connect_timeout",
            "read_timeout",
            "avg_item_latency_ms",
            "freshness_window_seconds",
        )
        if key in fb
    }

    config = Config(
        provider=final_provider,
        github_token=github_token,
        github_repository=pick(
            repository, "GITHUB_REPOSITORY", "github_repository"
        ),
        github_api_url=pick(None, "GITHUB_API_URL", "github_api_url"),
        azure_org=pick(None, "AZURE_DEVOPS_ORG", "azure_org"),
        azure_project=pick(None, "AZURE_DEVOPS_PROJECT", "azure_project"),
        azure_pat=azure_pat,
        azure_base_url=pick(None, "AZURE_DEVOPS_URL", "azure_base_url"),
        insecure=final_insecure,
        debug=final_debug,
        state_dir=pick(None, "WORKSYNC_STATE_DIR", "state_dir"),
        conflict_strategy=pick(
            None, "WORKSYNC_CONFLICT_STRATEGY", "conflict_strategy"
        ).lower(),
        max_concurrent=max_concurrent,
        **tuning,
    )

    validate_config(config)

    return config

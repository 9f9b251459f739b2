"""Configuration management with pydantic-settings for doc-updates-sync.

- pydantic-settings BaseSettings for type-safe configuration
- Automatic .env file loading with proper precedence
- SecretStr for the GitHub token
- Frozen config (immutable after load)

Also defines the tracked repository list and the ordered GitHub credential
resolution used by the sync engine.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("doc_updates.config")

__all__ = [
    "DEFAULT_REPOSITORIES",
    "TOKEN_ENV_PRECEDENCE",
    "TrackedRepository",
    "UpdatesConfig",
    "get_config",
    "load_repositories",
    "reset_config",
    "resolve_github_token",
]

# Environment variables consulted after the explicit argument and
# UpdatesConfig.github_token, in this order.
TOKEN_ENV_PRECEDENCE = ("DOC_UPDATES_GITHUB_TOKEN", "GH_TOKEN")


@dataclass(frozen=True)
class TrackedRepository:
    """A documentation repository whose "what's new" articles are mirrored.

    Attributes:
        owner: GitHub organization or user
        repo: Repository name
        branch: Branch to read from
        base_path: Sub-path holding the docs ("" = whole repository)
        docs_base: Microsoft Learn path segment, None if not published there
    """

    owner: str
    repo: str
    branch: str = "main"
    base_path: str = ""
    docs_base: str | None = None

    @property
    def repo_id(self) -> str:
        """Repository identifier in owner/repo format."""
        return f"{self.owner}/{self.repo}"


DEFAULT_REPOSITORIES: tuple[TrackedRepository, ...] = (
    TrackedRepository("MicrosoftDocs", "power-platform", "main", "power-platform", "power-platform"),
    TrackedRepository("MicrosoftDocs", "powerapps-docs", "main", "powerapps-docs", "power-apps"),
    TrackedRepository("MicrosoftDocs", "power-automate-docs", "main", "articles", "power-automate"),
    TrackedRepository("MicrosoftDocs", "powerbi-docs", "main", "powerbi-docs", "power-bi"),
    TrackedRepository("MicrosoftDocs", "power-pages-docs", "main", "power-pages-docs", "power-pages"),
    TrackedRepository("MicrosoftDocs", "ai-builder", "main", "ai-builder", "ai-builder"),
    TrackedRepository("MicrosoftDocs", "powerquery-docs", "main", "powerquery-docs", "power-query"),
    TrackedRepository("MicrosoftDocs", "m365copilot-docs", "main", "docs", "microsoft-365-copilot"),
    TrackedRepository("MicrosoftDocs", "copilot-connectors", "main", "copilot-connectors", "copilot-connectors"),
    TrackedRepository("MicrosoftDocs", "mslearn-developer-tools-power-platform", "main", ""),
    TrackedRepository("MicrosoftDocs", "powerapps-docs-rest-apis", "main", ""),
)


class UpdatesConfig(BaseSettings):
    """Configuration for doc-updates-sync.

    Loads from (in order of precedence):
    1. Constructor arguments (tests, CLI overrides)
    2. Environment variables
    3. .env file in the working directory
    4. Default values

    Attributes:
        github_token: Personal access token; optional, raises the API budget
        github_api_url: GitHub REST API base URL
        github_raw_url: Base URL for raw file content
        github_web_url: Base URL for human-facing blob links
        db_path: SQLite database file
        repositories_file: Optional YAML file overriding DEFAULT_REPOSITORIES
        min_sync_interval_seconds: Runs closer together than this are no-ops unless forced
        stale_after_seconds: Age at which the background trigger starts a sync
        max_files_per_run: Default cap on candidate files per run
        fetch_concurrency: Remote fetches in flight per batch
        run_budget_seconds: Wall-clock budget per run; leftover work is deferred
        resolve_commit_dates: Look up per-file commit dates after fetching content
        request_delay_ms: Minimum delay between API requests
        log_level: Logging level
        log_format: json or text
        metrics_enabled: Push sync metrics after each run
        pushgateway_url: Prometheus Pushgateway address
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    # --- GitHub access ---
    github_token: SecretStr = Field(
        default=SecretStr(""),
        description="GitHub PAT (optional). Unauthenticated requests are limited to 60/hour.",
    )
    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL",
    )
    github_raw_url: str = Field(
        default="https://raw.githubusercontent.com",
        description="Base URL for raw file content",
    )
    github_web_url: str = Field(
        default="https://github.com",
        description="Base URL for web links to files",
    )

    # --- Storage ---
    db_path: Path = Field(
        default=Path.home() / ".doc-updates" / "doc-updates.db",
        description="SQLite database file",
    )
    repositories_file: Path | None = Field(
        default=None,
        description="YAML file listing tracked repositories (defaults built in)",
    )

    # --- Sync behaviour ---
    min_sync_interval_seconds: int = Field(
        default=3600,
        ge=0,
        le=86400,
        description="Minimum seconds between unforced sync runs",
    )
    stale_after_seconds: int = Field(
        default=3600,
        ge=60,
        le=604800,
        description="Data older than this triggers a background sync",
    )
    max_files_per_run: int = Field(
        default=500,
        ge=1,
        le=10000,
        description="Maximum candidate files processed per run",
    )
    fetch_concurrency: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Concurrent remote fetches per batch",
    )
    run_budget_seconds: int = Field(
        default=1800,
        ge=10,
        le=7200,
        description="Wall-clock budget per run; remaining candidates are deferred",
    )
    resolve_commit_dates: bool = Field(
        default=True,
        description="Look up last/first commit dates for each fetched file",
    )
    request_delay_ms: int = Field(
        default=100,
        ge=0,
        le=5000,
        description="Minimum delay between GitHub API requests in milliseconds",
    )

    # --- Observability ---
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="json or text")
    metrics_enabled: bool = Field(default=False, description="Push metrics after each run")
    pushgateway_url: str = Field(
        default="localhost:9091",
        description="Prometheus Pushgateway host:port",
    )

    @field_validator("db_path", "repositories_file", mode="before")
    @classmethod
    def expand_user_paths(cls, v):
        """Expand ~ and environment variables in paths."""
        if isinstance(v, str):
            return Path(os.path.expanduser(os.path.expandvars(v)))
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept standard logging level names only."""
        upper = v.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Accept json or text."""
        lower = v.lower()
        if lower not in {"json", "text"}:
            raise ValueError(f"Invalid log format: {v}. Expected 'json' or 'text'.")
        return lower

    @field_validator("github_api_url", "github_raw_url", "github_web_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def repositories(self) -> tuple[TrackedRepository, ...]:
        """Tracked repositories, from repositories_file when configured."""
        return load_repositories(self.repositories_file)


def load_repositories(path: Path | None = None) -> tuple[TrackedRepository, ...]:
    """Load tracked repositories from a YAML file.

    Expected layout::

        repositories:
          - owner: MicrosoftDocs
            repo: powerbi-docs
            branch: main
            base_path: powerbi-docs
            docs_base: power-bi

    Malformed entries are skipped with a warning. Falls back to
    DEFAULT_REPOSITORIES when no path is given or nothing valid is found.
    """
    import yaml

    if path is None:
        return DEFAULT_REPOSITORIES

    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        logger.warning("Malformed repositories file %s: %s", path, e)
        return DEFAULT_REPOSITORIES
    except OSError as e:
        logger.error("Cannot read repositories file %s: %s", path, e)
        return DEFAULT_REPOSITORIES

    entries = raw.get("repositories", []) if isinstance(raw, dict) else []
    repositories: list[TrackedRepository] = []
    for entry in entries:
        try:
            repositories.append(
                TrackedRepository(
                    owner=entry["owner"],
                    repo=entry["repo"],
                    branch=entry.get("branch", "main"),
                    base_path=(entry.get("base_path") or "").strip("/"),
                    docs_base=entry.get("docs_base"),
                )
            )
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning("Skipping malformed repository entry %r: %s", entry, e)

    if not repositories:
        logger.warning("No valid repositories in %s, using defaults", path)
        return DEFAULT_REPOSITORIES
    return tuple(repositories)


def resolve_github_token(
    explicit: str | None = None,
    config: UpdatesConfig | None = None,
    environ: Mapping[str, str] | None = None,
) -> str | None:
    """Resolve the GitHub token from an ordered list of sources.

    Precedence (first non-empty wins):
    1. ``explicit`` argument (e.g. passed by the tool-call layer)
    2. ``config.github_token`` (env ``GITHUB_TOKEN`` or ``.env``)
    3. ``DOC_UPDATES_GITHUB_TOKEN`` environment variable
    4. ``GH_TOKEN`` environment variable

    Args:
        explicit: Token supplied by the caller
        config: Configuration; uses get_config() if None
        environ: Environment mapping; uses os.environ if None

    Returns:
        The token, or None when no source provides one.
    """
    if explicit and explicit.strip():
        return explicit.strip()

    config = config or get_config()
    configured = config.github_token.get_secret_value()
    if configured.strip():
        return configured.strip()

    environ = os.environ if environ is None else environ
    for name in TOKEN_ENV_PRECEDENCE:
        value = environ.get(name, "")
        if value.strip():
            return value.strip()
    return None


@lru_cache(maxsize=1)
def get_config() -> UpdatesConfig:
    """Get global configuration singleton.

    First call loads from environment + .env file, subsequent calls return
    the cached instance.

    Raises:
        ValidationError: If configuration values are invalid.
    """
    return UpdatesConfig()


def reset_config() -> None:
    """Reset configuration singleton (tests only)."""
    get_config.cache_clear()

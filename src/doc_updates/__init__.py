"""doc-updates-sync - Local mirror of "what's new" articles from GitHub docs.

Provides:
- Incremental sync engine over tracked documentation repositories
- Front-matter article extraction with date normalization
- SQLite store with FTS5 search
- Service facade for a tool-calling front end

Python Version: 3.10+ required
"""

# Logging Configuration - configure before other imports
from .logging_config import StructuredFormatter, configure_logging

# Initialize structured logging on module import
configure_logging()

from .__version__ import __version__
from .config import (
    DEFAULT_REPOSITORIES,
    TrackedRepository,
    UpdatesConfig,
    get_config,
    reset_config,
    resolve_github_token,
)
from .connectors.github import (
    ArticleSyncEngine,
    GitHubClient,
    GitHubClientError,
    RateLimitExceeded,
    SourceUnavailable,
    SyncResult,
    TruncatedListingError,
)
from .extractor import normalize_date, parse_article
from .models import (
    ArticleRecord,
    FileOutcome,
    ParsedArticle,
    RepositoryWatermark,
    SyncCheckpoint,
    SyncStatus,
    merge_article,
)
from .reconciler import ArticleReconciler
from .search import SearchFilters, search_articles
from .service import UpdatesService, docs_url
from .storage import ArticleStore, StoreError

__all__ = [
    "DEFAULT_REPOSITORIES",
    "ArticleReconciler",
    "ArticleRecord",
    "ArticleStore",
    "ArticleSyncEngine",
    "FileOutcome",
    "GitHubClient",
    "GitHubClientError",
    "ParsedArticle",
    "RateLimitExceeded",
    "RepositoryWatermark",
    "SearchFilters",
    "SourceUnavailable",
    "StoreError",
    "StructuredFormatter",
    "SyncCheckpoint",
    "SyncResult",
    "SyncStatus",
    "TrackedRepository",
    "TruncatedListingError",
    "UpdatesConfig",
    "UpdatesService",
    "__version__",
    "configure_logging",
    "docs_url",
    "get_config",
    "merge_article",
    "normalize_date",
    "parse_article",
    "reset_config",
    "resolve_github_token",
    "search_articles",
]

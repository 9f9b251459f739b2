"""GitHub integration package.

Provides the async API client for the GitHub REST API v3 (retries, rate-limit
propagation, ETag caching), change detection over tracked documentation
repositories, and the sync engine that mirrors their "what's new" articles.
"""

from .client import (
    GitHubClient,
    GitHubClientError,
    RateLimitExceeded,
    SourceUnavailable,
    TruncatedListingError,
)
from .detector import Candidate, ChangeDetector, PointerCheck
from .sync import ArticleSyncEngine, SyncResult, SyncRunGuard, run_guard

__all__ = [
    "ArticleSyncEngine",
    "Candidate",
    "ChangeDetector",
    "GitHubClient",
    "GitHubClientError",
    "PointerCheck",
    "RateLimitExceeded",
    "SourceUnavailable",
    "SyncResult",
    "SyncRunGuard",
    "TruncatedListingError",
    "run_guard",
]

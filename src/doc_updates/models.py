"""Data models shared by the extractor, reconciler, store and sync engine.

ArticleRecord is the explicit contract crossing the extractor/reconciler
boundary: every field except ``key`` is optional, and merge_article() is the
only place that decides which stored fields survive an update.
"""

from dataclasses import dataclass, field, replace
from enum import Enum

__all__ = [
    "ArticleRecord",
    "CommitRecord",
    "FileOutcome",
    "ParsedArticle",
    "RepositoryWatermark",
    "SyncCheckpoint",
    "SyncStatus",
    "make_key",
    "merge_article",
]


class SyncStatus(str, Enum):
    """Checkpoint status. Transitions: IDLE -> SYNCING -> {IDLE, ERROR}."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class FileOutcome(str, Enum):
    """Per-file result of one sync run."""

    UPDATED = "updated"  # Inserted or changed in the store
    UNCHANGED = "unchanged"  # Fetched, but merge produced the stored state
    FAILED = "failed"  # Fetch, parse or remote lookup failed
    DEFERRED = "deferred"  # Not attempted: cap, budget or rate limit


def make_key(repo_id: str, path: str) -> str:
    """Stable article key: repository id + file path."""
    return f"{repo_id}/{path}"


@dataclass(frozen=True)
class ParsedArticle:
    """Extractor output. Any field may be absent."""

    title: str | None = None
    summary: str | None = None
    effective_date: str | None = None  # ISO YYYY-MM-DD


@dataclass(frozen=True)
class ArticleRecord:
    """One mirrored "what's new" article.

    Attributes:
        key: repo_id + "/" + path, unique and stable for the file's lifetime
        repo_id: owner/repo of the source repository
        path: File path inside the repository
        title: Extracted title (filename-derived when the document has none)
        summary: Extracted description
        category: Product grouping, re-derived on every sync
        effective_date: Author-declared date, always ISO YYYY-MM-DD
        change_token: Remote blob SHA at the last successful refresh
        last_change_at: ISO 8601 time of the last remote commit touching the file
        first_seen_at: ISO 8601 time set on first insert, never overwritten
        source_locator: Raw content URL
        canonical_locator: Web URL for display
        id: Store row id (None until persisted)
    """

    key: str
    repo_id: str | None = None
    path: str | None = None
    title: str | None = None
    summary: str | None = None
    category: str | None = None
    effective_date: str | None = None
    change_token: str | None = None
    last_change_at: str | None = None
    first_seen_at: str | None = None
    source_locator: str | None = None
    canonical_locator: str | None = None
    id: int | None = field(default=None, compare=False)

    def to_dict(self) -> dict:
        """Convert to a plain dict for the tool-call layer."""
        return {
            "id": self.id,
            "key": self.key,
            "repo_id": self.repo_id,
            "path": self.path,
            "title": self.title,
            "summary": self.summary,
            "category": self.category,
            "effective_date": self.effective_date,
            "change_token": self.change_token,
            "last_change_at": self.last_change_at,
            "first_seen_at": self.first_seen_at,
            "source_locator": self.source_locator,
            "canonical_locator": self.canonical_locator,
        }


def merge_article(existing: ArticleRecord | None, incoming: ArticleRecord) -> ArticleRecord:
    """Merge a freshly extracted record into the stored one.

    All fields take the incoming value, except ``first_seen_at`` which keeps
    the stored value whenever one exists. ``last_change_at`` keeps the stored
    value only when the incoming record does not carry one.

    Raises:
        ValueError: If the keys differ.
    """
    if existing is None:
        return incoming
    if existing.key != incoming.key:
        raise ValueError(f"Cannot merge {incoming.key!r} into {existing.key!r}")

    return replace(
        incoming,
        first_seen_at=existing.first_seen_at or incoming.first_seen_at,
        last_change_at=incoming.last_change_at or existing.last_change_at,
        id=existing.id,
    )


@dataclass(frozen=True)
class RepositoryWatermark:
    """Last-seen head commit of a tracked repository."""

    repo_id: str
    latest_known_ref: str
    updated_at: str | None = None


@dataclass
class SyncCheckpoint:
    """Process-wide sync checkpoint (single row)."""

    last_successful_sync_at: str | None = None
    status: SyncStatus = SyncStatus.IDLE
    record_count: int = 0
    last_duration_ms: int | None = None
    last_error: str | None = None
    updated_at: str | None = None

    def to_status_dict(self) -> dict:
        """Subset exposed through get_checkpoint_status()."""
        return {
            "last_successful_sync_at": self.last_successful_sync_at,
            "status": self.status.value,
            "record_count": self.record_count,
        }


@dataclass(frozen=True)
class CommitRecord:
    """A commit seen by commit-history detection.

    Attributes:
        sha: Commit SHA
        repo_id: owner/repo the commit belongs to
        committed_at: Committer timestamp (ISO 8601), None if GitHub omitted it
        files: (path, change type) pairs, e.g. ("docs/whats-new.md", "modified")
    """

    sha: str
    repo_id: str
    committed_at: str | None = None
    message: str = ""
    author: str | None = None
    additions: int | None = None
    deletions: int | None = None
    files: tuple[tuple[str, str], ...] = ()

    @property
    def files_changed(self) -> int:
        return len(self.files)

    def to_dict(self) -> dict:
        return {
            "sha": self.sha,
            "repo_id": self.repo_id,
            "committed_at": self.committed_at,
            "message": self.message,
            "author": self.author,
            "files_changed": self.files_changed,
            "additions": self.additions,
            "deletions": self.deletions,
            "files": [{"path": path, "change_type": kind} for path, kind in self.files],
        }

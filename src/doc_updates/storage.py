"""SQLite store for mirrored articles, sync checkpoint and repository watermarks.

One connection per store handle. Article writes and their FTS5 projection
are kept consistent by triggers running inside the same transaction, so a
crash mid-write leaves either both or neither; the next sync re-converges.

Schema:
    articles          one row per file key (repo_id + path)
    articles_fts      FTS5 external-content index over title + summary
    sync_checkpoint   single row (id = 1)
    repo_watermarks   last-seen head commit per repository
    commits           commits seen by commit-history detection
    commit_files      files touched by each stored commit
"""

import logging
import sqlite3
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from .models import ArticleRecord, CommitRecord, RepositoryWatermark, SyncCheckpoint, SyncStatus

logger = logging.getLogger("doc_updates.storage")

__all__ = ["ArticleStore", "RemovalHook", "StoreError", "row_to_article", "utc_now_iso"]

SCHEMA_VERSION = 2

# Called with (repo_id, paths) for files that vanished from a full listing.
RemovalHook = Callable[[str, Sequence[str]], None]

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS articles (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    key               TEXT NOT NULL UNIQUE,
    repo_id           TEXT,
    path              TEXT,
    title             TEXT,
    summary           TEXT,
    category          TEXT,
    effective_date    TEXT,
    change_token      TEXT,
    last_change_at    TEXT,
    first_seen_at     TEXT,
    source_locator    TEXT,
    canonical_locator TEXT,
    created_at        TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at        TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_articles_repo ON articles(repo_id);
CREATE INDEX IF NOT EXISTS idx_articles_category ON articles(category);
CREATE INDEX IF NOT EXISTS idx_articles_effective_date ON articles(effective_date);
CREATE INDEX IF NOT EXISTS idx_articles_last_change ON articles(last_change_at);

CREATE TABLE IF NOT EXISTS sync_checkpoint (
    id                      INTEGER PRIMARY KEY CHECK (id = 1),
    last_successful_sync_at TEXT,
    status                  TEXT NOT NULL DEFAULT 'idle'
                            CHECK (status IN ('idle', 'syncing', 'error')),
    record_count            INTEGER NOT NULL DEFAULT 0,
    last_duration_ms        INTEGER,
    last_error              TEXT,
    updated_at              TEXT NOT NULL DEFAULT (datetime('now'))
);

INSERT OR IGNORE INTO sync_checkpoint (id, status, record_count) VALUES (1, 'idle', 0);

CREATE TABLE IF NOT EXISTS repo_watermarks (
    repo_id          TEXT PRIMARY KEY,
    latest_known_ref TEXT NOT NULL,
    updated_at       TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS commits (
    sha           TEXT PRIMARY KEY,
    repo_id       TEXT NOT NULL,
    committed_at  TEXT,
    message       TEXT NOT NULL DEFAULT '',
    author        TEXT,
    files_changed INTEGER NOT NULL DEFAULT 0,
    additions     INTEGER,
    deletions     INTEGER
);

CREATE INDEX IF NOT EXISTS idx_commits_committed_at ON commits(committed_at);

CREATE TABLE IF NOT EXISTS commit_files (
    commit_sha  TEXT NOT NULL REFERENCES commits(sha) ON DELETE CASCADE,
    path        TEXT NOT NULL,
    change_type TEXT NOT NULL,
    PRIMARY KEY (commit_sha, path)
);
"""

_FTS_SQL = """\
CREATE VIRTUAL TABLE IF NOT EXISTS articles_fts USING fts5(
    title,
    summary,
    content='articles',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS articles_ai AFTER INSERT ON articles BEGIN
    INSERT INTO articles_fts(rowid, title, summary)
    VALUES (new.id, new.title, new.summary);
END;

CREATE TRIGGER IF NOT EXISTS articles_au AFTER UPDATE ON articles BEGIN
    INSERT INTO articles_fts(articles_fts, rowid, title, summary)
    VALUES ('delete', old.id, old.title, old.summary);
    INSERT INTO articles_fts(rowid, title, summary)
    VALUES (new.id, new.title, new.summary);
END;

CREATE TRIGGER IF NOT EXISTS articles_ad AFTER DELETE ON articles BEGIN
    INSERT INTO articles_fts(articles_fts, rowid, title, summary)
    VALUES ('delete', old.id, old.title, old.summary);
END;
"""

_ARTICLE_COLUMNS = (
    "id, key, repo_id, path, title, summary, category, effective_date, "
    "change_token, last_change_at, first_seen_at, source_locator, canonical_locator"
)

_CHECKPOINT_FIELDS = {
    "last_successful_sync_at",
    "status",
    "record_count",
    "last_duration_ms",
    "last_error",
}


class StoreError(Exception):
    """Raised when the local store cannot be read or written."""

    pass


def utc_now_iso() -> str:
    """Current UTC time in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def row_to_article(row: sqlite3.Row) -> ArticleRecord:
    """Build an ArticleRecord from an ``articles`` row."""
    return ArticleRecord(
        id=row["id"],
        key=row["key"],
        repo_id=row["repo_id"],
        path=row["path"],
        title=row["title"],
        summary=row["summary"],
        category=row["category"],
        effective_date=row["effective_date"],
        change_token=row["change_token"],
        last_change_at=row["last_change_at"],
        first_seen_at=row["first_seen_at"],
        source_locator=row["source_locator"],
        canonical_locator=row["canonical_locator"],
    )


class ArticleStore:
    """SQLite-backed article store.

    Attributes:
        db_path: Database file path (":memory:" for an in-memory store)
        fts_enabled: Whether the FTS5 projection exists
        removal_hook: Optional callback for files gone from the remote listing

    Example:
        >>> with ArticleStore.open(Path("/tmp/updates.db")) as store:
        ...     store.get_checkpoint().status
        <SyncStatus.IDLE: 'idle'>
    """

    def __init__(
        self,
        db_path: Path | str,
        removal_hook: RemovalHook | None = None,
    ) -> None:
        self.db_path = db_path
        self.removal_hook = removal_hook
        self.fts_enabled = False
        try:
            if str(db_path) != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_path))
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Cannot open store at {db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(
        cls,
        db_path: Path | str,
        removal_hook: RemovalHook | None = None,
    ) -> "ArticleStore":
        """Open the store, create the schema and recover stale state."""
        store = cls(db_path, removal_hook=removal_hook)
        store.initialize()
        return store

    def __enter__(self) -> "ArticleStore":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying connection."""
        self._conn.close()

    @property
    def connection(self) -> sqlite3.Connection:
        """Underlying connection (read-only use by the query layer)."""
        return self._conn

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Transaction scope translating sqlite3 errors into StoreError."""
        try:
            with self._conn:
                yield self._conn
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    # --- Schema ---

    def initialize(self) -> None:
        """Create tables, indexes and the FTS5 projection if missing.

        A checkpoint left in ``syncing`` by an abruptly stopped process is
        reset to ``idle`` here, before any run can start.
        """
        try:
            if str(self.db_path) != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Schema creation failed: {e}") from e

        try:
            self._conn.executescript(_FTS_SQL)
            self.fts_enabled = True
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 unavailable, text search falls back to LIKE: %s", e)
            self.fts_enabled = False

        self.recover_stale_status()

    def recover_stale_status(self) -> bool:
        """Reset a stale ``syncing`` checkpoint to ``idle``.

        Returns:
            True if a stale status was found and reset
        """
        checkpoint = self.get_checkpoint()
        if checkpoint.status != SyncStatus.SYNCING:
            return False
        logger.warning(
            "Checkpoint left in 'syncing' by a previous process, resetting to idle"
        )
        self.update_checkpoint(status=SyncStatus.IDLE)
        return True

    # --- Articles ---

    def get_article(self, key: str) -> ArticleRecord | None:
        """Fetch an article by its key.

        Raises:
            StoreError: On read failure
        """
        try:
            row = self._conn.execute(
                f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot read article {key}: {e}") from e
        return row_to_article(row) if row else None

    def get_article_by_id(self, article_id: int) -> ArticleRecord | None:
        """Fetch an article by its row id."""
        row = self._conn.execute(
            f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id = ?", (article_id,)
        ).fetchone()
        return row_to_article(row) if row else None

    def write_article(self, record: ArticleRecord) -> None:
        """Insert or update an article keyed by ``record.key``.

        Every column is overwritten except ``first_seen_at``, which keeps
        the stored value when one exists.

        Raises:
            StoreError: On constraint violations or I/O errors
        """
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO articles (
                    key, repo_id, path, title, summary, category, effective_date,
                    change_token, last_change_at, first_seen_at,
                    source_locator, canonical_locator
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    repo_id = excluded.repo_id,
                    path = excluded.path,
                    title = excluded.title,
                    summary = excluded.summary,
                    category = excluded.category,
                    effective_date = excluded.effective_date,
                    change_token = excluded.change_token,
                    last_change_at = excluded.last_change_at,
                    first_seen_at = COALESCE(articles.first_seen_at, excluded.first_seen_at),
                    source_locator = excluded.source_locator,
                    canonical_locator = excluded.canonical_locator,
                    updated_at = datetime('now')
                """,
                (
                    record.key,
                    record.repo_id,
                    record.path,
                    record.title,
                    record.summary,
                    record.category,
                    record.effective_date,
                    record.change_token,
                    record.last_change_at,
                    record.first_seen_at,
                    record.source_locator,
                    record.canonical_locator,
                ),
            )

    def change_token_map(self, repo_id: str) -> dict[str, str]:
        """Map path -> stored change token for one repository."""
        rows = self._conn.execute(
            "SELECT path, change_token FROM articles "
            "WHERE repo_id = ? AND change_token IS NOT NULL",
            (repo_id,),
        ).fetchall()
        return {r["path"]: r["change_token"] for r in rows}

    def count_articles(self) -> int:
        """Number of stored articles."""
        return int(self._conn.execute("SELECT count(*) FROM articles").fetchone()[0])

    def categories(self) -> list[str]:
        """Distinct categories, sorted."""
        rows = self._conn.execute(
            "SELECT DISTINCT category FROM articles WHERE category IS NOT NULL ORDER BY category"
        ).fetchall()
        return [r[0] for r in rows]

    def notify_removed(self, repo_id: str, paths: Sequence[str]) -> None:
        """Report paths missing from a full listing. Records are kept."""
        if not paths:
            return
        logger.info(
            "%d stored file(s) no longer listed in %s; keeping records",
            len(paths),
            repo_id,
        )
        if self.removal_hook is not None:
            self.removal_hook(repo_id, list(paths))

    # --- Checkpoint ---

    def get_checkpoint(self) -> SyncCheckpoint:
        """Read the singleton checkpoint."""
        row = self._conn.execute(
            "SELECT last_successful_sync_at, status, record_count, last_duration_ms, "
            "last_error, updated_at FROM sync_checkpoint WHERE id = 1"
        ).fetchone()
        if row is None:
            return SyncCheckpoint()
        return SyncCheckpoint(
            last_successful_sync_at=row["last_successful_sync_at"],
            status=SyncStatus(row["status"]),
            record_count=row["record_count"],
            last_duration_ms=row["last_duration_ms"],
            last_error=row["last_error"],
            updated_at=row["updated_at"],
        )

    def update_checkpoint(self, **fields) -> None:
        """Update checkpoint columns given as keyword arguments.

        Raises:
            ValueError: On unknown field names
            StoreError: On write failure
        """
        unknown = set(fields) - _CHECKPOINT_FIELDS
        if unknown:
            raise ValueError(f"Unknown checkpoint fields: {sorted(unknown)}")

        sets = ["updated_at = ?"]
        values: list = [utc_now_iso()]
        for name, value in fields.items():
            sets.append(f"{name} = ?")
            values.append(value.value if isinstance(value, SyncStatus) else value)

        with self._write() as conn:
            conn.execute(
                f"UPDATE sync_checkpoint SET {', '.join(sets)} WHERE id = 1", values
            )

    # --- Watermarks ---

    def get_watermarks(self) -> dict[str, RepositoryWatermark]:
        """All repository watermarks keyed by repo_id."""
        rows = self._conn.execute(
            "SELECT repo_id, latest_known_ref, updated_at FROM repo_watermarks"
        ).fetchall()
        return {
            r["repo_id"]: RepositoryWatermark(
                repo_id=r["repo_id"],
                latest_known_ref=r["latest_known_ref"],
                updated_at=r["updated_at"],
            )
            for r in rows
        }

    def set_watermark(self, repo_id: str, ref: str) -> None:
        """Record the head commit a repository was fully synced at."""
        with self._write() as conn:
            conn.execute(
                "INSERT INTO repo_watermarks (repo_id, latest_known_ref, updated_at) "
                "VALUES (?, ?, ?) "
                "ON CONFLICT(repo_id) DO UPDATE SET "
                "latest_known_ref = excluded.latest_known_ref, "
                "updated_at = excluded.updated_at",
                (repo_id, ref, utc_now_iso()),
            )

    # --- Commits ---

    def write_commit(self, commit: CommitRecord) -> None:
        """Insert or replace a commit and its file list.

        Raises:
            StoreError: On write failure
        """
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO commits (
                    sha, repo_id, committed_at, message, author,
                    files_changed, additions, deletions
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(sha) DO UPDATE SET
                    repo_id = excluded.repo_id,
                    committed_at = excluded.committed_at,
                    message = excluded.message,
                    author = excluded.author,
                    files_changed = excluded.files_changed,
                    additions = excluded.additions,
                    deletions = excluded.deletions
                """,
                (
                    commit.sha,
                    commit.repo_id,
                    commit.committed_at,
                    commit.message,
                    commit.author,
                    commit.files_changed,
                    commit.additions,
                    commit.deletions,
                ),
            )
            conn.execute("DELETE FROM commit_files WHERE commit_sha = ?", (commit.sha,))
            conn.executemany(
                "INSERT OR REPLACE INTO commit_files (commit_sha, path, change_type) "
                "VALUES (?, ?, ?)",
                [(commit.sha, path, kind) for path, kind in commit.files],
            )

    def recent_commits(
        self,
        since: str | None = None,
        limit: int = 20,
        repo_id: str | None = None,
    ) -> list[CommitRecord]:
        """Stored commits, newest first.

        Args:
            since: Only commits at or after this ISO 8601 timestamp
            limit: Maximum number of commits
            repo_id: Restrict to one repository
        """
        clauses: list[str] = []
        params: list = []
        if since:
            clauses.append("committed_at >= ?")
            params.append(since)
        if repo_id:
            clauses.append("repo_id = ?")
            params.append(repo_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        rows = self._conn.execute(
            "SELECT sha, repo_id, committed_at, message, author, additions, deletions "
            f"FROM commits {where} ORDER BY committed_at DESC, sha LIMIT ?",
            [*params, limit],
        ).fetchall()

        commits = []
        for row in rows:
            files = self._conn.execute(
                "SELECT path, change_type FROM commit_files WHERE commit_sha = ? ORDER BY path",
                (row["sha"],),
            ).fetchall()
            commits.append(
                CommitRecord(
                    sha=row["sha"],
                    repo_id=row["repo_id"],
                    committed_at=row["committed_at"],
                    message=row["message"],
                    author=row["author"],
                    additions=row["additions"],
                    deletions=row["deletions"],
                    files=tuple((f["path"], f["change_type"]) for f in files),
                )
            )
        return commits

    def count_commits(self) -> int:
        """Number of stored commits."""
        return int(self._conn.execute("SELECT count(*) FROM commits").fetchone()[0])

    # --- Stats ---

    def stats(self) -> dict:
        """Store statistics for status displays."""
        size_kb = None
        if str(self.db_path) != ":memory:":
            try:
                size_kb = round(Path(self.db_path).stat().st_size / 1024, 1)
            except OSError:
                size_kb = None
        return {
            "article_count": self.count_articles(),
            "category_count": len(self.categories()),
            "repository_count": len(self.get_watermarks()),
            "commit_count": self.count_commits(),
            "database_size_kb": size_kb,
            "fts_enabled": self.fts_enabled,
        }

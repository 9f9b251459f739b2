"""Facade used by the tool-call layer.

Bundles the store, search and sync engine behind the operations a chat
front end needs: search, lookup by key or id, run a sync, report the
checkpoint, and kick off a background refresh when data is stale.
"""

import asyncio
import logging
from datetime import datetime, timezone
from urllib.parse import quote

from .config import TrackedRepository, UpdatesConfig, get_config
from .connectors.github.sync import ArticleSyncEngine, SyncResult
from .models import ArticleRecord, CommitRecord
from .search import SearchFilters, search_articles
from .storage import ArticleStore

logger = logging.getLogger("doc_updates.service")

__all__ = ["DOCS_SITE_URL", "UpdatesService", "docs_url"]

DOCS_SITE_URL = "https://learn.microsoft.com"


def docs_url(
    record: ArticleRecord,
    repositories: tuple[TrackedRepository, ...],
    locale: str = "en-us",
) -> str | None:
    """Microsoft Learn URL for an article, None if its repository is not published there."""
    repo = next((r for r in repositories if r.repo_id == record.repo_id), None)
    if repo is None or not repo.docs_base or not record.path:
        return None

    path = record.path
    if repo.base_path and path.startswith(repo.base_path + "/"):
        path = path[len(repo.base_path) + 1 :]
    if path.endswith(".md"):
        path = path[: -len(".md")]
    return f"{DOCS_SITE_URL}/{locale}/{repo.docs_base}/{quote(path)}"


class UpdatesService:
    """Query and sync operations over one article store.

    Attributes:
        config: Configuration
        store: Open ArticleStore
        repositories: Tracked repositories

    Example:
        >>> service = UpdatesService()
        >>> service.search(SearchFilters(query="copilot", limit=5))
    """

    def __init__(
        self,
        config: UpdatesConfig | None = None,
        store: ArticleStore | None = None,
        engine: ArticleSyncEngine | None = None,
        token: str | None = None,
    ) -> None:
        self.config = config or get_config()
        self.store = store or ArticleStore.open(self.config.db_path)
        self.repositories = engine.repositories if engine else self.config.repositories()
        self._engine = engine
        self._token = token

    @property
    def engine(self) -> ArticleSyncEngine:
        """Sync engine, created on first use."""
        if self._engine is None:
            self._engine = ArticleSyncEngine(
                self.store,
                config=self.config,
                repositories=self.repositories,
                token=self._token,
            )
        return self._engine

    async def aclose(self) -> None:
        """Close the engine's client and the store."""
        if self._engine is not None:
            await self._engine.close()
        self.store.close()

    # --- Queries ---

    def search(self, filters: SearchFilters | dict | None = None) -> list[ArticleRecord]:
        """Search articles; accepts a SearchFilters or a plain dict."""
        if filters is None:
            filters = SearchFilters()
        elif isinstance(filters, dict):
            filters = SearchFilters(**filters)
        return search_articles(self.store, filters)

    def get_by_key(self, key: str) -> ArticleRecord | None:
        return self.store.get_article(key)

    def get_by_id(self, article_id: int) -> ArticleRecord | None:
        return self.store.get_article_by_id(article_id)

    def categories(self) -> list[str]:
        return self.store.categories()

    def recent_commits(self, since: str | None = None, limit: int = 20) -> list[CommitRecord]:
        """Commits recorded by incremental syncs, newest first."""
        return self.store.recent_commits(since=since, limit=limit)

    def docs_url(self, record: ArticleRecord, locale: str = "en-us") -> str | None:
        return docs_url(record, self.repositories, locale)

    # --- Sync ---

    async def run_sync(
        self,
        force: bool = False,
        max_files: int | None = None,
        incremental: bool = False,
    ) -> SyncResult:
        """Run a sync through the engine. Never raises."""
        return await self.engine.run_sync(
            force=force, max_files=max_files, incremental=incremental
        )

    def get_checkpoint_status(self) -> dict:
        """{last_successful_sync_at, status, record_count}."""
        return self.store.get_checkpoint().to_status_dict()

    def is_stale(self) -> bool:
        """Whether the last successful sync is older than stale_after_seconds."""
        last = self.store.get_checkpoint().last_successful_sync_at
        if not last:
            return True
        try:
            last_dt = datetime.fromisoformat(last.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable last_successful_sync_at %r, treating as stale", last)
            return True
        if last_dt.tzinfo is None:
            last_dt = last_dt.replace(tzinfo=timezone.utc)
        age = (datetime.now(timezone.utc) - last_dt).total_seconds()
        return age >= self.config.stale_after_seconds

    def maybe_start_background_sync(self) -> asyncio.Task | None:
        """Start a background incremental sync if data is stale."""
        if not self.is_stale():
            return None
        logger.info("Data is stale, starting background sync")
        return self.engine.start_background_sync()

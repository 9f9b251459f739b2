"""Merge extracted articles into the store.

The reconciler is the only writer of article rows. It derives the fields
that are never authored (category, locators), merges with the stored row
through merge_article() so first_seen_at never regresses, and skips the
write when nothing would change.
"""

import logging
from urllib.parse import quote

from .config import TrackedRepository
from .extractor import infer_category, title_from_path
from .models import ArticleRecord, FileOutcome, ParsedArticle, make_key, merge_article
from .storage import ArticleStore

logger = logging.getLogger("doc_updates.reconciler")

__all__ = ["ArticleReconciler", "canonical_locator", "source_locator"]

DEFAULT_RAW_URL = "https://raw.githubusercontent.com"
DEFAULT_WEB_URL = "https://github.com"


def source_locator(repo: TrackedRepository, path: str, raw_url: str = DEFAULT_RAW_URL) -> str:
    """Raw content URL of a file on the tracked branch."""
    return f"{raw_url.rstrip('/')}/{repo.repo_id}/{repo.branch}/{quote(path)}"


def canonical_locator(repo: TrackedRepository, path: str, web_url: str = DEFAULT_WEB_URL) -> str:
    """GitHub web URL of a file on the tracked branch."""
    return f"{web_url.rstrip('/')}/{repo.repo_id}/blob/{repo.branch}/{quote(path)}"


class ArticleReconciler:
    """Insert-or-update of article records.

    Attributes:
        store: Target store
        raw_url: Raw content base URL used for source locators
        web_url: Web base URL used for canonical locators
    """

    def __init__(
        self,
        store: ArticleStore,
        raw_url: str = DEFAULT_RAW_URL,
        web_url: str = DEFAULT_WEB_URL,
    ) -> None:
        self.store = store
        self.raw_url = raw_url
        self.web_url = web_url

    def build_record(
        self,
        repo: TrackedRepository,
        path: str,
        parsed: ParsedArticle,
        change_token: str | None,
        last_change_at: str | None = None,
        first_seen_at: str | None = None,
    ) -> ArticleRecord:
        """Assemble a full record from extractor output and remote metadata."""
        return ArticleRecord(
            key=make_key(repo.repo_id, path),
            repo_id=repo.repo_id,
            path=path,
            title=parsed.title or title_from_path(path),
            summary=parsed.summary,
            category=infer_category(path, repo.repo),
            effective_date=parsed.effective_date,
            change_token=change_token,
            last_change_at=last_change_at,
            first_seen_at=first_seen_at,
            source_locator=source_locator(repo, path, self.raw_url),
            canonical_locator=canonical_locator(repo, path, self.web_url),
        )

    def upsert(self, record: ArticleRecord) -> FileOutcome:
        """Merge a record into the store.

        Returns:
            UPDATED when a row was inserted or changed, UNCHANGED otherwise

        Raises:
            StoreError: If the write fails
        """
        existing = self.store.get_article(record.key)
        merged = merge_article(existing, record)
        if existing is not None and merged == existing:
            logger.debug("Unchanged: %s", record.key)
            return FileOutcome.UNCHANGED

        self.store.write_article(merged)
        logger.debug("%s: %s", "Updated" if existing else "Inserted", record.key)
        return FileOutcome.UPDATED

"""Article search: FTS5 keyword matching with a LIKE fallback.

Results are ordered by the article's sort date (effective date, else the
date part of the last change) newest first, undated last. Date filters
apply to the same sort date.
"""

import logging
import sqlite3
from datetime import date

from pydantic import BaseModel, Field

from .models import ArticleRecord
from .storage import ArticleStore, row_to_article

logger = logging.getLogger("doc_updates.search")

__all__ = ["SearchFilters", "escape_fts5_query", "search_articles"]

_SORT_DATE = "COALESCE(a.effective_date, substr(a.last_change_at, 1, 10))"

_SELECT = (
    "SELECT a.id, a.key, a.repo_id, a.path, a.title, a.summary, a.category, "
    "a.effective_date, a.change_token, a.last_change_at, a.first_seen_at, "
    "a.source_locator, a.canonical_locator FROM articles a"
)


class SearchFilters(BaseModel):
    """Search parameters accepted from the tool-call layer."""

    query: str | None = Field(default=None, description="Free-text query over title and summary")
    category: str | None = Field(default=None, description="Case-insensitive category substring")
    date_from: date | None = Field(default=None, description="Earliest sort date (inclusive)")
    date_to: date | None = Field(default=None, description="Latest sort date (inclusive)")
    limit: int = Field(default=20, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


def escape_fts5_query(query: str) -> str:
    """Quote every token so FTS5 operators are matched literally."""
    words = query.strip().split()
    return " ".join('"' + w.replace('"', '""') + '"' for w in words)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _build_query(filters: SearchFilters, use_fts: bool) -> tuple[str, list]:
    clauses: list[str] = []
    params: list = []

    text = (filters.query or "").strip()
    if text:
        if use_fts:
            clauses.append(
                "a.id IN (SELECT rowid FROM articles_fts WHERE articles_fts MATCH ?)"
            )
            params.append(escape_fts5_query(text))
        else:
            for word in text.split():
                pattern = f"%{_escape_like(word)}%"
                clauses.append(
                    "(a.title LIKE ? ESCAPE '\\' OR a.summary LIKE ? ESCAPE '\\')"
                )
                params.extend([pattern, pattern])

    if filters.category:
        clauses.append("LOWER(a.category) LIKE ? ESCAPE '\\'")
        params.append(f"%{_escape_like(filters.category.lower())}%")
    if filters.date_from:
        clauses.append(f"{_SORT_DATE} >= ?")
        params.append(filters.date_from.isoformat())
    if filters.date_to:
        clauses.append(f"{_SORT_DATE} <= ?")
        params.append(filters.date_to.isoformat())

    sql = _SELECT
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += f" ORDER BY {_SORT_DATE} IS NULL, {_SORT_DATE} DESC, a.id DESC LIMIT ? OFFSET ?"
    params.extend([filters.limit, filters.offset])
    return sql, params


def search_articles(store: ArticleStore, filters: SearchFilters) -> list[ArticleRecord]:
    """Search stored articles.

    Runs concurrently with a sync; results may reflect a partially
    updated store.
    """
    conn = store.connection
    use_fts = store.fts_enabled
    sql, params = _build_query(filters, use_fts)
    try:
        rows = conn.execute(sql, params).fetchall()
    except sqlite3.OperationalError as e:
        if not use_fts:
            raise
        logger.warning("FTS5 query failed, retrying with LIKE: %s", e)
        sql, params = _build_query(filters, use_fts=False)
        rows = conn.execute(sql, params).fetchall()
    return [row_to_article(r) for r in rows]

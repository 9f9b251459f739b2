"""Shared pytest fixtures for doc-updates-sync tests.

Fixture Organization:
    - Configuration: UpdatesConfig instances isolated from the developer's .env
    - Storage: temporary SQLite stores with proper cleanup
    - Sample data: article records and markdown documents
"""

from collections.abc import Generator
from pathlib import Path

import pytest

from doc_updates.config import TrackedRepository, UpdatesConfig, reset_config
from doc_updates.models import ArticleRecord
from doc_updates.storage import ArticleStore

SAMPLE_REPO = TrackedRepository(
    owner="MicrosoftDocs",
    repo="powerbi-docs",
    branch="main",
    base_path="powerbi-docs",
    docs_base="power-bi",
)


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch) -> Generator[None, None, None]:
    """Clear token env vars and the config singleton around each test."""
    for name in ("GITHUB_TOKEN", "DOC_UPDATES_GITHUB_TOKEN", "GH_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config(tmp_path: Path) -> UpdatesConfig:
    """Config with fast, deterministic sync settings."""
    return UpdatesConfig(
        _env_file=None,
        db_path=tmp_path / "updates.db",
        min_sync_interval_seconds=0,
        request_delay_ms=0,
        resolve_commit_dates=False,
        metrics_enabled=False,
    )


@pytest.fixture
def store(tmp_path: Path) -> Generator[ArticleStore, None, None]:
    """Open store on a temporary database file."""
    article_store = ArticleStore.open(tmp_path / "store.db")
    yield article_store
    article_store.close()


@pytest.fixture
def sample_repo() -> TrackedRepository:
    return SAMPLE_REPO


def make_record(path: str = "powerbi-docs/fundamentals/whats-new.md", **overrides) -> ArticleRecord:
    """ArticleRecord for SAMPLE_REPO with sensible defaults."""
    fields = {
        "key": f"{SAMPLE_REPO.repo_id}/{path}",
        "repo_id": SAMPLE_REPO.repo_id,
        "path": path,
        "title": "What's new in Power BI",
        "summary": "Monthly feature updates for Power BI",
        "category": "Power BI",
        "effective_date": "2024-01-15",
        "change_token": "sha-1",
        "last_change_at": "2024-01-15T10:00:00Z",
        "first_seen_at": "2024-01-16T00:00:00+00:00",
        "source_locator": f"https://raw.githubusercontent.com/{SAMPLE_REPO.repo_id}/main/{path}",
        "canonical_locator": f"https://github.com/{SAMPLE_REPO.repo_id}/blob/main/{path}",
    }
    fields.update(overrides)
    return ArticleRecord(**fields)


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def sample_markdown() -> bytes:
    return (
        b"---\n"
        b"title: What's new in Power BI\n"
        b"description: Monthly feature updates for Power BI\n"
        b"ms.date: 01/15/2024\n"
        b"---\n\n"
        b"# What's new\n\nBody text.\n"
    )

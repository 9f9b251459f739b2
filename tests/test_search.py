"""Tests for article search (FTS5 with LIKE fallback)."""

from datetime import date

import pytest
from pydantic import ValidationError

from doc_updates.search import SearchFilters, escape_fts5_query, search_articles


@pytest.fixture
def populated(store, record_factory):
    """Five articles with mixed dates and categories."""
    rows = [
        ("p/a/whats-new.md", "Copilot in Power BI", "Ask questions of your data", "Power BI", "2024-03-01", None),
        ("p/b/whats-new.md", "Dataflows Gen2", "Faster refresh", "Power BI", "2024-01-15", None),
        ("p/c/whats-new.md", "Power Pages security", "New copilot features for sites", "Power Pages", None, "2024-02-10T12:00:00Z"),
        ("p/d/whats-new.md", "Undated note", "No dates at all", "AI Builder", None, None),
        ("p/e/whats-new.md", "100% uptime_report", "Edge cases", "Power Apps (Canvas)", "2023-12-01", None),
    ]
    for path, title, summary, category, effective, changed in rows:
        store.write_article(
            record_factory(
                path,
                title=title,
                summary=summary,
                category=category,
                effective_date=effective,
                last_change_at=changed,
            )
        )
    return store


def _titles(results):
    return [r.title for r in results]


class TestFilters:
    def test_defaults(self):
        filters = SearchFilters()
        assert filters.limit == 20
        assert filters.offset == 0
        assert filters.query is None

    def test_date_strings_parsed(self):
        filters = SearchFilters(date_from="2024-01-01")
        assert filters.date_from == date(2024, 1, 1)

    @pytest.mark.parametrize("bad", [{"limit": 0}, {"limit": 501}, {"offset": -1}, {"date_to": "soon"}])
    def test_invalid_values_rejected(self, bad):
        with pytest.raises(ValidationError):
            SearchFilters(**bad)


def test_escape_fts5_query():
    assert escape_fts5_query('copilot AND "power bi"') == '"copilot" "AND" """power" "bi"""'
    assert escape_fts5_query("  ") == ""


class TestSearch:
    def test_ordering_newest_first_undated_last(self, populated):
        results = search_articles(populated, SearchFilters())
        assert _titles(results) == [
            "Copilot in Power BI",
            "Power Pages security",
            "Dataflows Gen2",
            "100% uptime_report",
            "Undated note",
        ]

    def test_text_query_matches_title_and_summary(self, populated):
        results = search_articles(populated, SearchFilters(query="copilot"))
        assert _titles(results) == ["Copilot in Power BI", "Power Pages security"]

    def test_multiple_words_all_required(self, populated):
        results = search_articles(populated, SearchFilters(query="copilot refresh"))
        assert _titles(results) == []
        results = search_articles(populated, SearchFilters(query="copilot sites"))
        assert _titles(results) == ["Power Pages security"]

    def test_fts_operators_are_literal(self, populated):
        results = search_articles(populated, SearchFilters(query="copilot OR dataflows"))
        assert results == []

    def test_category_case_insensitive_substring(self, populated):
        results = search_articles(populated, SearchFilters(category="power bi"))
        assert _titles(results) == ["Copilot in Power BI", "Dataflows Gen2"]

    def test_category_with_parentheses(self, populated):
        results = search_articles(populated, SearchFilters(category="(canvas)"))
        assert _titles(results) == ["100% uptime_report"]

    def test_date_range_uses_sort_date(self, populated):
        results = search_articles(
            populated, SearchFilters(date_from="2024-02-01", date_to="2024-02-28")
        )
        assert _titles(results) == ["Power Pages security"]

    def test_date_filter_excludes_undated(self, populated):
        results = search_articles(populated, SearchFilters(date_from="2000-01-01"))
        assert "Undated note" not in _titles(results)
        assert len(results) == 4

    def test_limit_and_offset(self, populated):
        page = search_articles(populated, SearchFilters(limit=2, offset=1))
        assert _titles(page) == ["Power Pages security", "Dataflows Gen2"]

    def test_empty_query_returns_all(self, populated):
        assert len(search_articles(populated, SearchFilters(query="   "))) == 5

    def test_results_carry_row_ids(self, populated):
        assert all(r.id is not None for r in search_articles(populated, SearchFilters()))


class TestLikeFallback:
    def test_like_search_when_fts_disabled(self, populated):
        populated.fts_enabled = False
        results = search_articles(populated, SearchFilters(query="COPILOT"))
        assert _titles(results) == ["Copilot in Power BI", "Power Pages security"]

    def test_like_wildcards_escaped(self, populated):
        populated.fts_enabled = False
        assert _titles(search_articles(populated, SearchFilters(query="100%"))) == ["100% uptime_report"]
        assert _titles(search_articles(populated, SearchFilters(query="e_c"))) == []

    def test_fts_failure_retries_with_like(self, populated):
        populated.connection.execute("DROP TABLE articles_fts")
        results = search_articles(populated, SearchFilters(query="dataflows"))
        assert _titles(results) == ["Dataflows Gen2"]

"""Tests for change detection (pointer check, commit history, full tree)."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from doc_updates.config import TrackedRepository
from doc_updates.connectors.github.client import (
    CommitFile,
    CommitInfo,
    GitHubClientError,
    RateLimitExceeded,
    SourceUnavailable,
    TreeEntry,
    TruncatedListingError,
)
from doc_updates.connectors.github.detector import ChangeDetector
from doc_updates.models import RepositoryWatermark

REPO_A = TrackedRepository("MicrosoftDocs", "powerbi-docs", "main", "powerbi-docs", "power-bi")
REPO_B = TrackedRepository("MicrosoftDocs", "power-pages-docs", "main", "power-pages-docs")
REPO_ROOT = TrackedRepository("MicrosoftDocs", "mslearn-developer-tools-power-platform", "main", "")


def _detector(**client_methods) -> tuple[ChangeDetector, MagicMock, MagicMock]:
    client = MagicMock()
    for name, mock in client_methods.items():
        setattr(client, name, mock)
    on_removed = MagicMock()
    return ChangeDetector(client, on_removed=on_removed), client, on_removed


def _watermark(repo: TrackedRepository, ref: str) -> RepositoryWatermark:
    return RepositoryWatermark(repo_id=repo.repo_id, latest_known_ref=ref)


# -- Pointer check ------------------------------------------------------


@pytest.mark.asyncio
async def test_pointer_check_all_unchanged():
    """Equal refs for every repository => nothing changed, reliable."""
    detector, _, _ = _detector(latest_ref=AsyncMock(side_effect=["ref-a", "ref-b"]))
    watermarks = {
        REPO_A.repo_id: _watermark(REPO_A, "ref-a"),
        REPO_B.repo_id: _watermark(REPO_B, "ref-b"),
    }

    check = await detector.check_pointers([REPO_A, REPO_B], watermarks)

    assert check.reliable is True
    assert check.changed == []
    assert check.nothing_changed is True
    assert check.current_refs == {REPO_A.repo_id: "ref-a", REPO_B.repo_id: "ref-b"}


@pytest.mark.asyncio
async def test_pointer_check_reports_changed_and_unknown():
    detector, _, _ = _detector(latest_ref=AsyncMock(side_effect=["ref-a2", "ref-b"]))
    watermarks = {REPO_A.repo_id: _watermark(REPO_A, "ref-a")}

    check = await detector.check_pointers([REPO_A, REPO_B], watermarks)

    assert check.reliable is True
    assert check.changed == [REPO_A, REPO_B]
    assert check.nothing_changed is False


@pytest.mark.asyncio
async def test_pointer_check_partial_failure_is_unreliable():
    """One failed lookup makes the check untrusted; all repos count as changed."""
    detector, _, _ = _detector(
        latest_ref=AsyncMock(side_effect=["ref-a", SourceUnavailable("502")])
    )
    watermarks = {
        REPO_A.repo_id: _watermark(REPO_A, "ref-a"),
        REPO_B.repo_id: _watermark(REPO_B, "ref-b"),
    }

    check = await detector.check_pointers([REPO_A, REPO_B], watermarks)

    assert check.reliable is False
    assert check.nothing_changed is False
    assert check.changed == [REPO_A, REPO_B]
    assert check.current_refs == {REPO_A.repo_id: "ref-a"}


@pytest.mark.asyncio
async def test_pointer_check_rate_limit_propagates():
    detector, _, _ = _detector(latest_ref=AsyncMock(side_effect=RateLimitExceeded(None)))
    with pytest.raises(RateLimitExceeded):
        await detector.check_pointers([REPO_A], {})


# -- Full tree ------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_tree_selects_new_and_changed_eligible_files():
    tree = [
        TreeEntry("powerbi-docs/fundamentals/whats-new.md", "sha-new", "blob"),
        TreeEntry("powerbi-docs/report-server/whats-new.md", "sha-same", "blob"),
        TreeEntry("powerbi-docs/release-notes/2024.md", "sha-changed", "blob"),
        TreeEntry("powerbi-docs/fundamentals/overview.md", "sha-x", "blob"),
        TreeEntry("powerbi-docs/whats-new", "sha-dir", "tree"),
        TreeEntry("other/whats-new.md", "sha-out", "blob"),
    ]
    detector, _, on_removed = _detector(list_tree=AsyncMock(return_value=tree))
    token_map = {
        "powerbi-docs/report-server/whats-new.md": "sha-same",
        "powerbi-docs/release-notes/2024.md": "sha-old",
    }

    candidates = await detector.full_tree_candidates(REPO_A, token_map)

    assert [(c.path, c.version_id) for c in candidates] == [
        ("powerbi-docs/fundamentals/whats-new.md", "sha-new"),
        ("powerbi-docs/release-notes/2024.md", "sha-changed"),
    ]
    assert candidates[0].key == "MicrosoftDocs/powerbi-docs/powerbi-docs/fundamentals/whats-new.md"
    on_removed.assert_not_called()


@pytest.mark.asyncio
async def test_full_tree_reports_missing_files_without_selecting_them():
    """Stored files absent remotely go to the removal hook only."""
    tree = [TreeEntry("powerbi-docs/whats-new.md", "sha-1", "blob")]
    detector, _, on_removed = _detector(list_tree=AsyncMock(return_value=tree))
    token_map = {
        "powerbi-docs/whats-new.md": "sha-1",
        "powerbi-docs/gone/whats-new.md": "sha-2",
    }

    candidates = await detector.full_tree_candidates(REPO_A, token_map)

    assert candidates == []
    on_removed.assert_called_once_with(REPO_A.repo_id, ["powerbi-docs/gone/whats-new.md"])


@pytest.mark.asyncio
async def test_full_tree_truncated_falls_back_to_scoped_listing():
    scoped = [TreeEntry("fundamentals/whats-new.md", "sha-1", "blob")]
    list_tree = AsyncMock(side_effect=[TruncatedListingError(REPO_A.repo_id), scoped])
    detector, _, _ = _detector(list_tree=list_tree)

    candidates = await detector.full_tree_candidates(REPO_A, {})

    assert [c.path for c in candidates] == ["powerbi-docs/fundamentals/whats-new.md"]
    assert list_tree.call_args_list[1][0] == (REPO_A.repo_id, "main:powerbi-docs")


@pytest.mark.asyncio
async def test_full_tree_truncated_without_base_path_raises():
    detector, _, _ = _detector(
        list_tree=AsyncMock(side_effect=TruncatedListingError(REPO_ROOT.repo_id))
    )
    with pytest.raises(TruncatedListingError):
        await detector.full_tree_candidates(REPO_ROOT, {})


@pytest.mark.asyncio
async def test_full_tree_scoped_listing_truncated_raises():
    detector, _, _ = _detector(
        list_tree=AsyncMock(
            side_effect=[
                TruncatedListingError(REPO_A.repo_id),
                TruncatedListingError(REPO_A.repo_id, "main:powerbi-docs"),
            ]
        )
    )
    with pytest.raises(TruncatedListingError):
        await detector.full_tree_candidates(REPO_A, {})


@pytest.mark.asyncio
async def test_full_tree_listing_error_propagates():
    detector, _, _ = _detector(list_tree=AsyncMock(side_effect=GitHubClientError("404")))
    with pytest.raises(GitHubClientError):
        await detector.full_tree_candidates(REPO_A, {})


# -- Commit history -------------------------------------------------------


@pytest.mark.asyncio
async def test_incremental_keeps_newest_version_per_path():
    commits = [
        CommitInfo(
            "c3",
            "2024-03-03T00:00:00Z",
            [CommitFile("powerbi-docs/whats-new.md", "sha-3", "modified")],
        ),
        CommitInfo(
            "c2",
            "2024-03-02T00:00:00Z",
            [
                CommitFile("powerbi-docs/whats-new.md", "sha-2", "modified"),
                CommitFile("powerbi-docs/release-notes.md", "sha-r", "added"),
                CommitFile("powerbi-docs/overview.md", "sha-o", "modified"),
            ],
        ),
    ]
    list_commits = AsyncMock(return_value=commits)
    detector, _, _ = _detector(list_commits_since=list_commits)

    candidates = await detector.incremental_candidates(REPO_A, "2024-03-01T00:00:00+00:00")

    assert [(c.path, c.version_id, c.last_change_at) for c in candidates] == [
        ("powerbi-docs/whats-new.md", "sha-3", "2024-03-03T00:00:00Z"),
        ("powerbi-docs/release-notes.md", "sha-r", "2024-03-02T00:00:00Z"),
    ]
    list_commits.assert_awaited_once_with(
        REPO_A.repo_id, "powerbi-docs", "2024-03-01T00:00:00+00:00", "main"
    )


@pytest.mark.asyncio
async def test_incremental_skips_unchanged_tokens_and_reports_removed():
    commits = [
        CommitInfo(
            "c2",
            "2024-03-02T00:00:00Z",
            [
                CommitFile("powerbi-docs/whats-new.md", "sha-1", "modified"),
                CommitFile("powerbi-docs/old-updates.md", None, "removed"),
            ],
        ),
    ]
    detector, _, on_removed = _detector(list_commits_since=AsyncMock(return_value=commits))
    token_map = {
        "powerbi-docs/whats-new.md": "sha-1",
        "powerbi-docs/old-updates.md": "sha-old",
    }

    candidates = await detector.incremental_candidates(REPO_A, "2024-03-01T00:00:00Z", token_map)

    assert candidates == []
    on_removed.assert_called_once_with(REPO_A.repo_id, ["powerbi-docs/old-updates.md"])


@pytest.mark.asyncio
async def test_incremental_whole_repository_passes_no_path():
    list_commits = AsyncMock(return_value=[])
    detector, _, _ = _detector(list_commits_since=list_commits)

    assert await detector.incremental_candidates(REPO_ROOT, "2024-01-01T00:00:00Z") == []
    assert list_commits.call_args[0][1] is None


@pytest.mark.asyncio
async def test_incremental_hands_walked_commits_to_callback():
    commits = [
        CommitInfo("c1", "2024-03-01T00:00:00Z", [CommitFile("powerbi-docs/whats-new.md", "sha-1", "added")]),
    ]
    on_commits = MagicMock()
    client = MagicMock()
    client.list_commits_since = AsyncMock(return_value=commits)
    detector = ChangeDetector(client, on_commits=on_commits)

    candidates = await detector.incremental_candidates(REPO_A, "2024-01-01T00:00:00Z")

    on_commits.assert_called_once_with(REPO_A.repo_id, commits)
    assert [c.path for c in candidates] == ["powerbi-docs/whats-new.md"]


@pytest.mark.asyncio
async def test_incremental_without_commits_skips_callback():
    on_commits = MagicMock()
    client = MagicMock()
    client.list_commits_since = AsyncMock(return_value=[])
    detector = ChangeDetector(client, on_commits=on_commits)

    await detector.incremental_candidates(REPO_A, "2024-01-01T00:00:00Z")

    on_commits.assert_not_called()


@pytest.mark.asyncio
async def test_incremental_truncated_history_propagates():
    detector, _, _ = _detector(
        list_commits_since=AsyncMock(
            side_effect=TruncatedListingError(REPO_A.repo_id, "c1", message="File list of commit c1 exceeds 10 pages")
        )
    )

    with pytest.raises(TruncatedListingError):
        await detector.incremental_candidates(REPO_A, "2024-01-01T00:00:00Z")

"""Change detection for tracked documentation repositories.

Three escalating checks, cheapest first:

1. Repository pointer: compare each repository's head commit with its
   stored watermark. Trusted only when every repository answered.
2. Commit history: walk commits under the docs sub-path since the last
   successful sync and collect the files they touched (incremental runs).
3. Full tree: list every eligible file and compare its blob SHA with the
   stored change token (first sync, forced full sync).

Files that disappear remotely are reported to a removal callback and
otherwise left alone. Commits walked by the history check are handed to an
optional commit callback for persistence.
"""

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from doc_updates.config import TrackedRepository
from doc_updates.connectors.github.client import (
    CommitInfo,
    GitHubClient,
    GitHubClientError,
    RateLimitExceeded,
    TruncatedListingError,
)
from doc_updates.extractor import is_whats_new_path
from doc_updates.models import RepositoryWatermark, make_key

logger = logging.getLogger("doc_updates.github.detector")

__all__ = ["Candidate", "ChangeDetector", "PointerCheck"]


@dataclass(frozen=True)
class Candidate:
    """A file selected for fetching in this run."""

    repo: TrackedRepository
    path: str
    version_id: str
    last_change_at: str | None = None  # known from commit history, if any

    @property
    def key(self) -> str:
        return make_key(self.repo.repo_id, self.path)


@dataclass
class PointerCheck:
    """Outcome of the repository-pointer check.

    Attributes:
        reliable: True only if the head ref was obtained for every repository
        current_refs: repo_id -> head commit SHA, for repositories that answered
        changed: Repositories whose head differs from the stored watermark
            (all repositories when the check is unreliable)
    """

    reliable: bool
    current_refs: dict[str, str] = field(default_factory=dict)
    changed: list[TrackedRepository] = field(default_factory=list)

    @property
    def nothing_changed(self) -> bool:
        return self.reliable and not self.changed


class ChangeDetector:
    """Decides which files a sync run has to fetch.

    Attributes:
        client: GitHub client used for listings
        on_removed: Called with (repo_id, paths) for stored files missing
            from the remote; must not delete anything by default
        on_commits: Called with (repo_id, commits) after a commit-history
            walk; exceptions propagate to the caller
    """

    def __init__(
        self,
        client: GitHubClient,
        on_removed: Callable[[str, Sequence[str]], None] | None = None,
        on_commits: Callable[[str, Sequence[CommitInfo]], None] | None = None,
    ) -> None:
        self.client = client
        self.on_removed = on_removed
        self.on_commits = on_commits

    async def check_pointers(
        self,
        repos: Sequence[TrackedRepository],
        watermarks: Mapping[str, RepositoryWatermark],
    ) -> PointerCheck:
        """Compare head commits with stored watermarks.

        A failed lookup for any repository makes the whole check unreliable;
        every repository is then reported as changed so the caller falls
        back to commit-history or full-tree detection.

        Raises:
            RateLimitExceeded: Propagated so the run stops calling out
        """
        check = PointerCheck(reliable=True)
        for repo in repos:
            try:
                check.current_refs[repo.repo_id] = await self.client.latest_ref(
                    repo.repo_id, repo.branch
                )
            except RateLimitExceeded:
                raise
            except GitHubClientError as e:
                logger.warning("Head lookup failed for %s: %s", repo.repo_id, e)
                check.reliable = False

        if not check.reliable:
            check.changed = list(repos)
            return check

        for repo in repos:
            stored = watermarks.get(repo.repo_id)
            if stored is None or stored.latest_known_ref != check.current_refs[repo.repo_id]:
                check.changed.append(repo)

        logger.info(
            "Pointer check: %d of %d repositories changed",
            len(check.changed),
            len(repos),
        )
        return check

    async def full_tree_candidates(
        self,
        repo: TrackedRepository,
        token_map: Mapping[str, str],
    ) -> list[Candidate]:
        """Select eligible files whose blob SHA differs from the stored token.

        A truncated whole-repository listing is retried once scoped to the
        docs sub-path. If that is truncated too, or there is no sub-path,
        TruncatedListingError propagates and the repository fails this cycle.

        Args:
            repo: Repository to list
            token_map: path -> stored change token for this repository
        """
        try:
            entries = await self.client.list_tree(repo.repo_id, repo.branch)
            listed = [(e.path, e.version_id) for e in entries if e.kind == "blob"]
        except TruncatedListingError:
            if not repo.base_path:
                raise
            logger.warning(
                "Tree listing for %s truncated, retrying scoped to %s/",
                repo.repo_id,
                repo.base_path,
            )
            entries = await self.client.list_tree(
                repo.repo_id, f"{repo.branch}:{repo.base_path}"
            )
            listed = [
                (f"{repo.base_path}/{e.path}", e.version_id) for e in entries if e.kind == "blob"
            ]

        eligible = {
            path: version_id
            for path, version_id in listed
            if is_whats_new_path(path, repo.base_path)
        }
        candidates = [
            Candidate(repo=repo, path=path, version_id=version_id)
            for path, version_id in sorted(eligible.items())
            if token_map.get(path) != version_id
        ]

        missing = sorted(set(token_map) - set(eligible))
        if missing and self.on_removed is not None:
            self.on_removed(repo.repo_id, missing)

        logger.info(
            "Full tree %s: %d eligible, %d changed",
            repo.repo_id,
            len(eligible),
            len(candidates),
        )
        return candidates

    async def incremental_candidates(
        self,
        repo: TrackedRepository,
        since: str,
        token_map: Mapping[str, str] | None = None,
    ) -> list[Candidate]:
        """Select eligible files touched by commits since a timestamp.

        Commits arrive newest first, so the first sighting of a path carries
        its current blob SHA and change time. Removed files are reported to
        on_removed; files whose SHA matches the stored token are skipped.
        """
        token_map = token_map or {}
        commits = await self.client.list_commits_since(
            repo.repo_id, repo.base_path or None, since, repo.branch
        )
        if commits and self.on_commits is not None:
            self.on_commits(repo.repo_id, commits)

        seen: set[str] = set()
        removed: list[str] = []
        candidates: list[Candidate] = []
        for commit in commits:
            for changed in commit.files:
                if changed.previous_filename and changed.previous_filename not in seen:
                    seen.add(changed.previous_filename)
                    if changed.previous_filename in token_map:
                        removed.append(changed.previous_filename)
                if changed.filename in seen:
                    continue
                seen.add(changed.filename)

                if changed.version_id is None:
                    if changed.filename in token_map:
                        removed.append(changed.filename)
                    continue
                if not is_whats_new_path(changed.filename, repo.base_path):
                    continue
                if token_map.get(changed.filename) == changed.version_id:
                    continue
                candidates.append(
                    Candidate(
                        repo=repo,
                        path=changed.filename,
                        version_id=changed.version_id,
                        last_change_at=commit.timestamp,
                    )
                )

        if removed and self.on_removed is not None:
            self.on_removed(repo.repo_id, sorted(removed))

        logger.info(
            "Commit history %s since %s: %d commits, %d changed files",
            repo.repo_id,
            since,
            len(commits),
            len(candidates),
        )
        return candidates

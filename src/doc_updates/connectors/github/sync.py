"""Sync engine for mirroring "what's new" articles from GitHub docs repositories.

Orchestrates ChangeDetector (what to fetch), GitHubClient (fetch),
parse_article (extract) and ArticleReconciler (persist), and owns every
checkpoint and watermark write.

Run lifecycle: idle -> syncing -> {idle, error}. At most one run per store
is in flight; a second trigger on the same event loop joins the running
one, any other is dropped.
"""

import asyncio
import logging
import threading
import time
import weakref
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from doc_updates.config import TrackedRepository, UpdatesConfig, get_config, resolve_github_token
from doc_updates.connectors.github.client import (
    CommitInfo,
    GitHubClient,
    GitHubClientError,
    RateLimitExceeded,
)
from doc_updates.connectors.github.detector import Candidate, ChangeDetector, PointerCheck
from doc_updates.extractor import parse_article
from doc_updates.metrics import (
    push_sync_metrics,
    sync_duration_seconds,
    sync_files_total,
    sync_runs_total,
)
from doc_updates.models import ArticleRecord, CommitRecord, FileOutcome, SyncStatus
from doc_updates.reconciler import ArticleReconciler, source_locator
from doc_updates.storage import ArticleStore, StoreError, utc_now_iso

logger = logging.getLogger("doc_updates.github.sync")

__all__ = ["ArticleSyncEngine", "SyncResult", "SyncRunGuard", "run_guard"]


@dataclass
class SyncResult:
    """Result of one sync run.

    ``success`` is False when any file failed, the rate limit was hit, or
    the run could not proceed at all. Deferred files alone do not fail a run
    but still hold back the checkpoint timestamp.
    """

    success: bool = True
    updated_count: int = 0
    unchanged_count: int = 0
    failed_count: int = 0
    deferred_count: int = 0
    commits_count: int = 0  # commits recorded by commit-history detection
    duration_ms: int = 0
    error: str | None = None
    skipped: bool = False  # interval guard or overlapping trigger
    error_details: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for the tool-call layer, metrics and logging."""
        return {
            "success": self.success,
            "updated_count": self.updated_count,
            "unchanged_count": self.unchanged_count,
            "failed_count": self.failed_count,
            "deferred_count": self.deferred_count,
            "commits_count": self.commits_count,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "skipped": self.skipped,
        }


class SyncRunGuard:
    """In-process run handles keyed by store instance.

    ``try_acquire`` registers a future that later triggers can await;
    ``release`` resolves it with the run's result.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: "weakref.WeakKeyDictionary[ArticleStore, asyncio.Future]" = (
            weakref.WeakKeyDictionary()
        )

    def in_flight(self, store: ArticleStore) -> asyncio.Future | None:
        with self._lock:
            return self._runs.get(store)

    def try_acquire(self, store: ArticleStore) -> asyncio.Future | None:
        """Claim the store for a run.

        Returns:
            A future to resolve on release, or None if a run is in flight
        """
        with self._lock:
            if store in self._runs:
                return None
            future = asyncio.get_running_loop().create_future()
            self._runs[store] = future
            return future

    def release(self, store: ArticleStore, result: SyncResult) -> None:
        with self._lock:
            future = self._runs.pop(store, None)
        if future is not None and not future.done():
            future.set_result(result)


run_guard = SyncRunGuard()

# Strong references to background tasks so they are not collected mid-run
_background_tasks: set[asyncio.Task] = set()


@dataclass
class _Fetched:
    """Outcome of the remote half of processing one candidate."""

    candidate: Candidate
    record: ArticleRecord | None = None
    outcome: FileOutcome | None = None  # FAILED or DEFERRED when record is None
    error: str | None = None


def _commit_record(repo_id: str, commit: CommitInfo) -> CommitRecord:
    return CommitRecord(
        sha=commit.sha,
        repo_id=repo_id,
        committed_at=commit.timestamp,
        message=commit.message,
        author=commit.author,
        additions=commit.additions,
        deletions=commit.deletions,
        files=tuple((f.filename, f.status) for f in commit.files),
    )


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ArticleSyncEngine:
    """Coordinates one sync run across all tracked repositories.

    Attributes:
        store: Article store; also the key of the run guard
        config: Sync configuration
        client: GitHubClient (created from config when not supplied)
        repositories: Tracked repositories
        detector: ChangeDetector bound to client
        reconciler: ArticleReconciler bound to store
    """

    def __init__(
        self,
        store: ArticleStore,
        config: UpdatesConfig | None = None,
        client: GitHubClient | None = None,
        repositories: tuple[TrackedRepository, ...] | None = None,
        token: str | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Open ArticleStore
            config: Configuration. Uses get_config() if None.
            client: GitHub client. Built from config and resolved token if None.
            repositories: Override of config.repositories()
            token: Explicit GitHub token, highest precedence
        """
        self.store = store
        self.config = config or get_config()
        self.repositories = (
            tuple(repositories) if repositories is not None else self.config.repositories()
        )
        self._owns_client = client is None
        self.client = client or GitHubClient(
            token=resolve_github_token(token, self.config),
            base_url=self.config.github_api_url,
            min_delay_ms=self.config.request_delay_ms,
        )
        self.detector = ChangeDetector(
            self.client,
            on_removed=store.notify_removed,
            on_commits=self._record_commits,
        )
        self.reconciler = ArticleReconciler(
            store,
            raw_url=self.config.github_raw_url,
            web_url=self.config.github_web_url,
        )
        self._rate_limited: RateLimitExceeded | None = None
        self._commits_recorded = 0

    async def __aenter__(self) -> "ArticleSyncEngine":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the GitHub client if this engine created it."""
        if self._owns_client:
            await self.client.close()

    # -- Entry points --------------------------------------------------

    async def run_sync(
        self,
        force: bool = False,
        max_files: int | None = None,
        incremental: bool = False,
    ) -> SyncResult:
        """Run one sync cycle.

        Never raises: every failure is reported through SyncResult.error.

        Args:
            force: Ignore the minimum interval between runs
            max_files: Cap on candidate files (default: config.max_files_per_run)
            incremental: Use commit history since the last successful sync
                instead of full-tree diffs where possible

        Returns:
            SyncResult for this run, or for the in-flight run it joined
        """
        pending = run_guard.in_flight(self.store)
        if pending is not None:
            return await self._join_or_drop(pending)

        future = run_guard.try_acquire(self.store)
        if future is None:
            return await self._join_or_drop(run_guard.in_flight(self.store))

        result = SyncResult(success=False, error="Sync aborted")
        try:
            result = await self._run(force=force, max_files=max_files, incremental=incremental)
        except Exception as e:
            logger.error("Sync run crashed: %s", e, exc_info=True)
            result = SyncResult(success=False, error=f"Sync failed: {e}")
        finally:
            run_guard.release(self.store, result)
        return result

    async def _join_or_drop(self, pending: asyncio.Future | None) -> SyncResult:
        if pending is not None and pending.get_loop() is asyncio.get_running_loop():
            logger.info("Sync already in flight for this store, joining it")
            return await asyncio.shield(pending)
        logger.info("Sync already in flight for this store, dropping trigger")
        return SyncResult(success=False, skipped=True, error="Sync already in progress")

    def start_background_sync(self) -> asyncio.Task | None:
        """Start an incremental sync without blocking the caller.

        Errors are logged, never propagated. Returns the task, or None when
        no event loop is running or a run is already in flight.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, background sync not started")
            return None
        if run_guard.in_flight(self.store) is not None:
            logger.debug("Background sync skipped, a run is already in flight")
            return None

        task = loop.create_task(self._background_run())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return task

    async def _background_run(self) -> None:
        try:
            result = await self.run_sync(incremental=True)
            if not result.success and not result.skipped:
                logger.warning("Background sync finished with errors: %s", result.error)
        except Exception as e:
            logger.error("Background sync failed: %s", e, exc_info=True)

    # -- Run -----------------------------------------------------------

    def _within_interval(self, last_sync_at: str | None) -> bool:
        if not last_sync_at:
            return False
        last = _parse_iso(last_sync_at)
        if last is None:
            return False
        age = (datetime.now(timezone.utc) - last).total_seconds()
        return age < self.config.min_sync_interval_seconds

    async def _run(self, force: bool, max_files: int | None, incremental: bool) -> SyncResult:
        start = time.monotonic()
        started_at = utc_now_iso()
        result = SyncResult()
        self._rate_limited = None
        self._commits_recorded = 0

        try:
            checkpoint = self.store.get_checkpoint()
            if not force and self._within_interval(checkpoint.last_successful_sync_at):
                logger.info(
                    "Last sync at %s is within %ds, skipping",
                    checkpoint.last_successful_sync_at,
                    self.config.min_sync_interval_seconds,
                )
                result.skipped = True
                sync_runs_total.labels(outcome="skipped").inc()
                return result

            self.store.update_checkpoint(status=SyncStatus.SYNCING, last_error=None)
        except StoreError as e:
            logger.error("Cannot update checkpoint: %s", e)
            result.success = False
            result.error = f"Store error: {e}"
            sync_runs_total.labels(outcome="failed").inc()
            return result

        logger.info(
            "Starting sync: repos=%d, incremental=%s, force=%s",
            len(self.repositories),
            incremental,
            force,
        )

        try:
            await self._sync_repositories(
                result,
                since=checkpoint.last_successful_sync_at,
                started_at=started_at,
                cap=max_files if max_files is not None else self.config.max_files_per_run,
                deadline=start + self.config.run_budget_seconds,
                incremental=incremental,
                start=start,
            )
        except StoreError as e:
            logger.error("Persistence failure, aborting run: %s", e)
            result.success = False
            result.error = f"Store error: {e}"
            result.duration_ms = int((time.monotonic() - start) * 1000)
            self._save_failed_checkpoint(result)
        result.commits_count = self._commits_recorded

        self._record_metrics(result)
        logger.info(
            "Sync complete: success=%s updated=%d unchanged=%d failed=%d deferred=%d in %dms",
            result.success,
            result.updated_count,
            result.unchanged_count,
            result.failed_count,
            result.deferred_count,
            result.duration_ms,
        )
        return result

    async def _sync_repositories(
        self,
        result: SyncResult,
        since: str | None,
        started_at: str,
        cap: int,
        deadline: float,
        incremental: bool,
        start: float,
    ) -> None:
        watermarks = self.store.get_watermarks()

        try:
            pointers = await self.detector.check_pointers(self.repositories, watermarks)
        except RateLimitExceeded as e:
            self._rate_limited = e
            pointers = PointerCheck(reliable=False, changed=[])
            result.error_details.append(str(e))

        if pointers.nothing_changed:
            logger.info("No repository changed since the last sync")
            result.duration_ms = int((time.monotonic() - start) * 1000)
            self.store.update_checkpoint(
                status=SyncStatus.IDLE,
                last_successful_sync_at=started_at,
                last_duration_ms=result.duration_ms,
                last_error=None,
            )
            return

        # repo_id -> reason it must not advance its watermark this run
        held_back: dict[str, str] = {}
        candidates = await self._collect_candidates(
            pointers.changed, since, watermarks, incremental, result, held_back
        )

        to_process, over_cap = candidates[:cap], candidates[cap:]
        if over_cap:
            logger.info("%d candidate(s) over the cap of %d, deferring", len(over_cap), cap)
        self._defer(over_cap, result, held_back, "cap")

        concurrency = self.config.fetch_concurrency
        for i in range(0, len(to_process), concurrency):
            if self._rate_limited is not None:
                self._defer(to_process[i:], result, held_back, "rate limit")
                break
            if time.monotonic() >= deadline:
                logger.warning("Run budget exhausted, deferring %d file(s)", len(to_process) - i)
                self._defer(to_process[i:], result, held_back, "run budget")
                break

            batch = to_process[i : i + concurrency]
            # Store reads stay outside the fetch tasks so StoreError aborts the run
            known = {c.key for c in batch if self.store.get_article(c.key) is not None}
            fetched = await asyncio.gather(
                *(self._fetch(c, is_new=c.key not in known) for c in batch)
            )

            # Persist serially in batch order
            for item in fetched:
                self._persist(item, result, held_back)

        self._finish(result, pointers, started_at, held_back, start)

    async def _collect_candidates(
        self,
        repos: list[TrackedRepository],
        since: str | None,
        watermarks: dict,
        incremental: bool,
        result: SyncResult,
        held_back: dict[str, str],
    ) -> list[Candidate]:
        candidates: list[Candidate] = []
        for repo in repos:
            if self._rate_limited is not None:
                held_back[repo.repo_id] = "rate limit"
                continue

            token_map = self.store.change_token_map(repo.repo_id)
            try:
                if incremental and since and repo.repo_id in watermarks:
                    found = await self.detector.incremental_candidates(repo, since, token_map)
                else:
                    found = await self.detector.full_tree_candidates(repo, token_map)
            except RateLimitExceeded as e:
                self._rate_limited = e
                held_back[repo.repo_id] = "rate limit"
                result.error_details.append(str(e))
                continue
            except GitHubClientError as e:
                logger.warning("Listing failed for %s: %s", repo.repo_id, e)
                held_back[repo.repo_id] = "listing failed"
                result.error_details.append(f"{repo.repo_id}: {e}")
                continue
            candidates.extend(found)
        return candidates

    def _defer(
        self,
        candidates: list[Candidate],
        result: SyncResult,
        held_back: dict[str, str],
        reason: str,
    ) -> None:
        result.deferred_count += len(candidates)
        for candidate in candidates:
            held_back.setdefault(candidate.repo.repo_id, reason)

    def _record_commits(self, repo_id: str, commits: Sequence[CommitInfo]) -> None:
        """Persist commits walked by commit-history detection. StoreError propagates."""
        for commit in commits:
            self.store.write_commit(_commit_record(repo_id, commit))
        self._commits_recorded += len(commits)

    async def _fetch(self, candidate: Candidate, is_new: bool = False) -> _Fetched:
        """Fetch, parse and date one candidate. Never raises.

        The rate-limit flag is checked before every remote call, since a
        sibling task in the same batch may have hit the limit meanwhile.
        """
        deferred = _Fetched(candidate, outcome=FileOutcome.DEFERRED)
        if self._rate_limited is not None:
            return deferred

        repo = candidate.repo
        try:
            raw = await self.client.fetch_raw(
                source_locator(repo, candidate.path, self.config.github_raw_url)
            )
            parsed = parse_article(raw)

            last_change_at = candidate.last_change_at
            first_seen_at = None
            if self.config.resolve_commit_dates:
                if last_change_at is None:
                    if self._rate_limited is not None:
                        return deferred
                    last_change_at = await self.client.get_last_commit_date(
                        repo.repo_id, candidate.path, repo.branch
                    )
                if is_new:
                    if self._rate_limited is not None:
                        return deferred
                    first_seen_at = await self.client.get_first_commit_date(
                        repo.repo_id, candidate.path, repo.branch
                    )

            record = self.reconciler.build_record(
                repo,
                candidate.path,
                parsed,
                change_token=candidate.version_id,
                last_change_at=last_change_at,
                first_seen_at=first_seen_at or utc_now_iso(),
            )
            return _Fetched(candidate, record=record)
        except RateLimitExceeded as e:
            if self._rate_limited is None:
                logger.warning("Rate limit hit, stopping remote calls: %s", e)
                self._rate_limited = e
            return deferred
        except GitHubClientError as e:
            logger.warning("Fetch failed for %s: %s", candidate.key, e)
            return _Fetched(candidate, outcome=FileOutcome.FAILED, error=str(e))
        except Exception as e:
            logger.error("Unexpected error processing %s: %s", candidate.key, e, exc_info=True)
            return _Fetched(candidate, outcome=FileOutcome.FAILED, error=str(e))

    def _persist(self, item: _Fetched, result: SyncResult, held_back: dict[str, str]) -> None:
        """Write one fetched candidate. StoreError propagates."""
        repo_id = item.candidate.repo.repo_id
        if item.record is None:
            if item.outcome == FileOutcome.DEFERRED:
                self._defer([item.candidate], result, held_back, "rate limit")
            else:
                result.failed_count += 1
                result.error_details.append(f"{item.candidate.key}: {item.error}")
                held_back[repo_id] = "file failures"
            return

        outcome = self.reconciler.upsert(item.record)
        if outcome == FileOutcome.UPDATED:
            result.updated_count += 1
        else:
            result.unchanged_count += 1

    def _finish(
        self,
        result: SyncResult,
        pointers: PointerCheck,
        started_at: str,
        held_back: dict[str, str],
        start: float,
    ) -> None:
        """Advance watermarks and the checkpoint as far as the run allows."""
        for repo in pointers.changed:
            ref = pointers.current_refs.get(repo.repo_id)
            if ref is None:
                continue
            if repo.repo_id in held_back:
                logger.info(
                    "Watermark for %s held back (%s)", repo.repo_id, held_back[repo.repo_id]
                )
                continue
            self.store.set_watermark(repo.repo_id, ref)

        result.duration_ms = int((time.monotonic() - start) * 1000)
        clean = not held_back and self._rate_limited is None and not result.error_details

        if self._rate_limited is not None:
            result.success = False
            result.error = self._summary(f"Rate limit exceeded: {self._rate_limited}", result)
        elif result.failed_count or result.error_details:
            result.success = False
            processed = result.updated_count + result.unchanged_count
            prefix = "Sync completed with errors" if processed else "Sync failed"
            result.error = self._summary(prefix, result)

        fields: dict[str, Any] = {
            "record_count": self.store.count_articles(),
            "last_duration_ms": result.duration_ms,
            "status": SyncStatus.IDLE if result.success else SyncStatus.ERROR,
            "last_error": result.error,
        }
        if clean:
            fields["last_successful_sync_at"] = started_at
        elif result.success:
            logger.info(
                "%d file(s) deferred, last successful sync timestamp not advanced",
                result.deferred_count,
            )
        self.store.update_checkpoint(**fields)

    @staticmethod
    def _summary(prefix: str, result: SyncResult) -> str:
        parts = [prefix]
        if result.failed_count:
            parts.append(f"{result.failed_count} file(s) failed")
        if result.deferred_count:
            parts.append(f"{result.deferred_count} file(s) deferred")
        if result.error_details:
            parts.append("; ".join(result.error_details[:3]))
        return ". ".join(parts)

    def _save_failed_checkpoint(self, result: SyncResult) -> None:
        try:
            self.store.update_checkpoint(
                status=SyncStatus.ERROR,
                last_error=result.error,
                last_duration_ms=result.duration_ms,
            )
        except StoreError as e:
            logger.error("Could not record failure in checkpoint: %s", e)

    # -- Metrics -------------------------------------------------------

    def _record_metrics(self, result: SyncResult) -> None:
        for status in ("updated", "unchanged", "failed", "deferred"):
            count = getattr(result, f"{status}_count")
            if count:
                sync_files_total.labels(status=status).inc(count)

        if result.success:
            outcome = "success" if result.deferred_count == 0 else "partial"
        else:
            outcome = "partial" if result.updated_count else "failed"
        sync_runs_total.labels(outcome=outcome).inc()
        sync_duration_seconds.observe(result.duration_ms / 1000.0)

        if self.config.metrics_enabled:
            push_sync_metrics(self.config.pushgateway_url, result.to_dict())

"""GitHub REST API client.

Async httpx-based client for the GitHub REST API v3 with optional token auth.
Implements Link header pagination, ETag caching for conditional requests,
exponential backoff for transient failures, and immediate propagation of
authorization and rate-limit errors.

Reference: https://docs.github.com/en/rest
Rate limits: https://docs.github.com/en/rest/using-the-rest-api/rate-limits-for-the-rest-api
"""

import asyncio
import hashlib
import logging
import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from doc_updates.metrics import github_rate_limit_remaining

logger = logging.getLogger("doc_updates.github.client")

__all__ = [
    "CommitFile",
    "CommitInfo",
    "GitHubClient",
    "GitHubClientError",
    "RateLimitExceeded",
    "SourceUnavailable",
    "TreeEntry",
    "TruncatedListingError",
]


class GitHubClientError(Exception):
    """Raised when a GitHub API request fails.

    Wraps httpx errors and HTTP errors for consistent error handling.
    Authorization failures and not-found responses raise this base class.
    """

    pass


class SourceUnavailable(GitHubClientError):
    """Raised when transient failures (5xx, timeouts, network) outlast retries."""

    pass


class RateLimitExceeded(GitHubClientError):
    """Raised when the GitHub rate limit is exhausted. Never retried."""

    def __init__(self, reset_at: datetime | None, message: str = "Rate limit exceeded"):
        self.reset_at = reset_at
        if reset_at is not None:
            super().__init__(f"{message}. Resets at {reset_at.isoformat()}")
        else:
            super().__init__(f"{message}. Reset time unknown")


class TruncatedListingError(GitHubClientError):
    """Raised when a listing is incomplete.

    Covers recursive tree listings the API truncated and paginated listings
    that hit the client's page limit with more pages remaining.
    """

    def __init__(self, repo_id: str, tree_ref: str = "HEAD", message: str | None = None):
        self.repo_id = repo_id
        self.tree_ref = tree_ref
        super().__init__(message or f"Tree listing for {repo_id}@{tree_ref} was truncated")


@dataclass(frozen=True)
class TreeEntry:
    """One entry of a recursive tree listing."""

    path: str
    version_id: str  # blob SHA
    kind: str  # "blob" or "tree"


@dataclass(frozen=True)
class CommitFile:
    """A file touched by a commit."""

    filename: str
    version_id: str | None  # blob SHA after the commit, None when removed
    status: str  # added, modified, removed, renamed, ...
    previous_filename: str | None = None


@dataclass(frozen=True)
class CommitInfo:
    """A commit with its timestamp and changed files."""

    sha: str
    timestamp: str | None
    files: list[CommitFile] = field(default_factory=list)
    message: str = ""
    author: str | None = None
    additions: int | None = None
    deletions: int | None = None


def _commit_timestamp(commit: dict[str, Any]) -> str | None:
    """Committer date of a commit payload, falling back to the author date."""
    inner = commit.get("commit") or {}
    for role in ("committer", "author"):
        date = (inner.get(role) or {}).get("date")
        if date:
            return date
    return None


class GitHubClient:
    """GitHub REST API client using httpx with optional Bearer token auth.

    Uses a long-lived httpx.AsyncClient with connection pooling. Without a
    token the API allows 60 requests/hour; this is logged, not enforced.

    Attributes:
        base_url: GitHub API base URL (default: https://api.github.com)
        authenticated: Whether a token is attached to requests
        _rate_limit_remaining: Tracked from X-RateLimit-Remaining header
        _rate_limit_reset: Tracked from X-RateLimit-Reset header
        _etag_cache: URL-keyed cache of ETag/Last-Modified values

    Example:
        >>> async with GitHubClient("ghp_token") as client:
        ...     ref = await client.latest_ref("MicrosoftDocs/powerbi-docs", "main")
        ...     tree = await client.list_tree("MicrosoftDocs/powerbi-docs", ref)
    """

    BASE_URL = "https://api.github.com"

    MIN_REQUEST_DELAY_MS = 100  # Minimum delay between requests (ms)
    LOW_QUOTA_WARNING = 50  # Warn when fewer requests remain

    # Timeout configuration
    CONNECT_TIMEOUT = 5.0  # seconds
    READ_TIMEOUT = 30.0  # seconds
    WRITE_TIMEOUT = 5.0  # seconds
    POOL_TIMEOUT = 5.0  # seconds

    # Retry configuration
    MAX_RETRIES = 3
    BASE_BACKOFF = 2  # seconds, exponential: min(60, 2^attempt)
    MAX_BACKOFF = 60  # seconds

    # Pagination
    DEFAULT_PER_PAGE = 100
    MAX_PAGES = 100
    MAX_COMMIT_FILE_PAGES = 10  # GitHub serves at most 3000 files per commit, 300 per page

    MAX_ETAG_CACHE_SIZE = 1000

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        min_delay_ms: int = MIN_REQUEST_DELAY_MS,
    ) -> None:
        """Initialize the GitHub client.

        Args:
            token: GitHub Personal Access Token, or None for anonymous access
            base_url: GitHub API base URL (default: https://api.github.com)
            min_delay_ms: Minimum delay between requests in milliseconds
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.authenticated = bool(token)
        self._min_delay_s = min_delay_ms / 1000.0

        self._rate_limit_remaining: int | None = None
        self._rate_limit_reset: float | None = None
        self._last_request_time: float = 0.0

        # ETag cache: {url_hash: {"etag": str, "last_modified": str, "data": Any}}
        self._etag_cache: dict[str, dict[str, Any]] = {}

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "doc-updates-sync/0.3",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            logger.warning(
                "No GitHub token configured; unauthenticated requests are limited to 60/hour"
            )

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=self.CONNECT_TIMEOUT,
                read=self.READ_TIMEOUT,
                write=self.WRITE_TIMEOUT,
                pool=self.POOL_TIMEOUT,
            ),
            follow_redirects=True,
        )

    async def __aenter__(self) -> "GitHubClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit -- close httpx client."""
        await self.close()

    async def close(self) -> None:
        """Close the httpx client and release connections."""
        await self._client.aclose()

    # --- Repository Data Endpoints ---

    async def latest_ref(self, repo_id: str, branch: str = "main") -> str:
        """Get the head commit SHA of a branch.

        Args:
            repo_id: Repository in owner/repo format
            branch: Branch name

        Returns:
            Commit SHA the branch points at
        """
        data = await self._request(
            "GET", f"/repos/{repo_id}/branches/{quote(branch, safe='')}"
        )
        sha = (data.get("commit") or {}).get("sha")
        if not sha:
            raise GitHubClientError(f"No head commit for {repo_id}@{branch}")
        return sha

    async def list_tree(self, repo_id: str, tree_ref: str = "HEAD") -> list[TreeEntry]:
        """List every entry of a tree recursively.

        Args:
            repo_id: Repository in owner/repo format
            tree_ref: Tree SHA, branch name, or ``branch:sub/path`` for a
                listing scoped to a directory (paths are then relative to it)

        Returns:
            List of tree entries

        Raises:
            TruncatedListingError: If the API reports a truncated listing
        """
        data = await self._request(
            "GET",
            f"/repos/{repo_id}/git/trees/{quote(tree_ref, safe=':/')}",
            params={"recursive": "1"},
        )
        if data.get("truncated"):
            raise TruncatedListingError(repo_id, tree_ref)

        return [
            TreeEntry(path=item["path"], version_id=item["sha"], kind=item.get("type", "blob"))
            for item in data.get("tree", [])
            if item.get("path") and item.get("sha")
        ]

    async def fetch_raw(self, locator: str) -> bytes:
        """Fetch raw file bytes from an absolute URL.

        Args:
            locator: Raw content URL

        Returns:
            Response body bytes
        """
        response = await self._raw_request("GET", locator)
        return response.content

    async def list_commits_since(
        self,
        repo_id: str,
        path: str | None,
        since: str,
        branch: str | None = None,
    ) -> list[CommitInfo]:
        """List commits touching a path since a timestamp, with changed files.

        Each listed commit is fetched individually to obtain its file list,
        following the pages GitHub splits large file lists into.

        Args:
            repo_id: Repository in owner/repo format
            path: Sub-path filter ("" or None for the whole repository)
            since: ISO 8601 timestamp
            branch: Branch to walk (default: repository default branch)

        Returns:
            Commits, newest first

        Raises:
            TruncatedListingError: If the commit listing or a commit's file
                list has more pages than the client will follow
        """
        params: dict[str, str] = {"since": since}
        if path:
            params["path"] = path
        if branch:
            params["sha"] = branch

        listed = await self._paginate(f"/repos/{repo_id}/commits", params=params)

        commits: list[CommitInfo] = []
        for item in listed:
            sha = item.get("sha")
            if not sha:
                continue
            detail, raw_files = await self._commit_detail(repo_id, sha)
            files = [
                CommitFile(
                    filename=f["filename"],
                    version_id=None if f.get("status") == "removed" else f.get("sha"),
                    status=f.get("status", "modified"),
                    previous_filename=f.get("previous_filename"),
                )
                for f in raw_files
                if f.get("filename")
            ]
            inner = detail.get("commit") or {}
            stats = detail.get("stats") or {}
            commits.append(
                CommitInfo(
                    sha=sha,
                    timestamp=_commit_timestamp(detail),
                    files=files,
                    message=inner.get("message") or "",
                    author=(inner.get("author") or {}).get("name"),
                    additions=stats.get("additions"),
                    deletions=stats.get("deletions"),
                )
            )
        return commits

    async def _commit_detail(
        self, repo_id: str, sha: str
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        """Fetch one commit and every page of its changed files."""
        path = f"/repos/{repo_id}/commits/{sha}"
        response = await self._raw_request("GET", path)
        detail = response.json()
        files = list(detail.get("files") or [])

        for _ in range(self.MAX_COMMIT_FILE_PAGES - 1):
            next_url = self._parse_next_link(response.headers.get("Link", ""))
            if not next_url:
                return detail, files
            response = await self._raw_request("GET", next_url)
            files.extend(response.json().get("files") or [])

        if self._parse_next_link(response.headers.get("Link", "")):
            raise TruncatedListingError(
                repo_id,
                sha,
                message=(
                    f"File list of commit {sha} in {repo_id} exceeds "
                    f"{self.MAX_COMMIT_FILE_PAGES} pages"
                ),
            )
        return detail, files

    async def get_last_commit_date(
        self, repo_id: str, path: str, branch: str | None = None
    ) -> str | None:
        """Timestamp of the newest commit touching a file."""
        params: dict[str, str] = {"path": path, "per_page": "1"}
        if branch:
            params["sha"] = branch
        response = await self._raw_request("GET", f"/repos/{repo_id}/commits", params=params)
        commits = response.json()
        if isinstance(commits, list) and commits:
            return _commit_timestamp(commits[0])
        return None

    async def get_first_commit_date(
        self, repo_id: str, path: str, branch: str | None = None
    ) -> str | None:
        """Timestamp of the oldest commit touching a file.

        Requests one commit per page and jumps straight to the page named by
        the ``rel="last"`` link. Long histories still cost two requests.
        """
        params: dict[str, str] = {"path": path, "per_page": "1"}
        if branch:
            params["sha"] = branch
        response = await self._raw_request("GET", f"/repos/{repo_id}/commits", params=params)

        last_url = self._parse_link(response.headers.get("Link", ""), "last")
        if last_url:
            response = await self._raw_request("GET", last_url)

        commits = response.json()
        if isinstance(commits, list) and commits:
            return _commit_timestamp(commits[-1])
        return None

    # --- Rate Limiting ---

    async def _enforce_rate_limit(self) -> None:
        """Enforce the minimum delay between requests."""
        elapsed = time.monotonic() - self._last_request_time
        if elapsed < self._min_delay_s:
            await asyncio.sleep(self._min_delay_s - elapsed)

    def _update_rate_limits(self, response: httpx.Response) -> None:
        """Update rate limit tracking from response headers.

        Args:
            response: httpx response with rate limit headers
        """
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            try:
                self._rate_limit_remaining = int(remaining)
                github_rate_limit_remaining.set(self._rate_limit_remaining)
            except ValueError:
                logger.warning("Non-numeric X-RateLimit-Remaining header: %r", remaining)

        reset = response.headers.get("X-RateLimit-Reset")
        if reset is not None:
            try:
                self._rate_limit_reset = float(reset)
            except ValueError:
                logger.warning("Non-numeric X-RateLimit-Reset header: %r", reset)

        if (
            self._rate_limit_remaining is not None
            and 0 < self._rate_limit_remaining <= self.LOW_QUOTA_WARNING
        ):
            logger.warning(
                "Rate limit low: %d remaining, resets at %s",
                self._rate_limit_remaining,
                self._reset_datetime().isoformat() if self._rate_limit_reset else "unknown",
            )

    def _reset_datetime(self) -> datetime | None:
        if self._rate_limit_reset is None:
            return None
        return datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc)

    @staticmethod
    def _rate_limit_error(response: httpx.Response) -> RateLimitExceeded | None:
        """Build RateLimitExceeded if the response signals quota exhaustion."""
        status = response.status_code
        remaining = response.headers.get("X-RateLimit-Remaining", "")

        if status in (403, 429) and remaining == "0":
            reset = response.headers.get("X-RateLimit-Reset")
            try:
                reset_at = datetime.fromtimestamp(float(reset), tz=timezone.utc) if reset else None
            except ValueError:
                reset_at = None
            return RateLimitExceeded(reset_at)

        if status == 429 or (status == 403 and "Retry-After" in response.headers):
            try:
                retry_after = int(response.headers.get("Retry-After", "60"))
            except ValueError:
                retry_after = 60
            return RateLimitExceeded(
                datetime.fromtimestamp(time.time() + retry_after, tz=timezone.utc),
                "Secondary rate limit exceeded",
            )
        return None

    # --- ETag Caching ---

    def _cache_key(self, url: str, params: dict[str, str] | None = None) -> str:
        """SHA-256 of URL + sorted params, truncated."""
        key_parts = [url]
        if params:
            key_parts.extend(f"{k}={v}" for k, v in sorted(params.items()))
        return hashlib.sha256("|".join(key_parts).encode()).hexdigest()[:16]

    def _get_conditional_headers(self, cache_key: str) -> dict[str, str]:
        headers: dict[str, str] = {}
        cached = self._etag_cache.get(cache_key)
        if cached:
            if cached.get("last_modified"):
                headers["If-Modified-Since"] = cached["last_modified"]
            if cached.get("etag"):
                headers["If-None-Match"] = cached["etag"]
        return headers

    def _update_cache(self, cache_key: str, response: httpx.Response, data: Any) -> None:
        etag = response.headers.get("ETag")
        last_modified = response.headers.get("Last-Modified")
        if etag or last_modified:
            # Evict the oldest quarter when full (dicts keep insertion order)
            if len(self._etag_cache) >= self.MAX_ETAG_CACHE_SIZE:
                for key in list(self._etag_cache)[: self.MAX_ETAG_CACHE_SIZE // 4]:
                    del self._etag_cache[key]
            self._etag_cache[cache_key] = {
                "etag": etag,
                "last_modified": last_modified,
                "data": data,
            }

    # --- Core HTTP Methods ---

    def _backoff(self, attempt: int) -> float:
        return min(self.MAX_BACKOFF, self.BASE_BACKOFF ** (attempt + 1)) + random.uniform(0, 1)

    async def _raw_request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make a raw HTTP request with pacing, retries and error mapping.

        Retries 5xx responses and transport errors with exponential backoff.
        Rate-limit and authorization failures are raised immediately.

        Args:
            method: HTTP method
            path: API path or absolute URL
            params: Query parameters
            extra_headers: Additional headers (e.g., conditional cache headers)

        Returns:
            Raw httpx.Response (status 2xx or 304)

        Raises:
            RateLimitExceeded: When the quota is exhausted
            SourceUnavailable: When transient errors outlast retries
            GitHubClientError: On non-retryable errors (auth, not found)
        """
        for attempt in range(self.MAX_RETRIES + 1):
            await self._enforce_rate_limit()

            try:
                self._last_request_time = time.monotonic()
                response = await self._client.request(
                    method, path, params=params, headers=extra_headers or {}
                )
            except httpx.TransportError as e:
                if attempt < self.MAX_RETRIES:
                    backoff = self._backoff(attempt)
                    logger.warning(
                        "Transport error (%s). Retrying in %.1fs (attempt %d/%d)",
                        type(e).__name__,
                        backoff,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise SourceUnavailable(
                    f"Request failed after {self.MAX_RETRIES} retries: {e}"
                ) from e
            except httpx.HTTPError as e:
                raise GitHubClientError(f"HTTP error: {e}") from e

            self._update_rate_limits(response)

            rate_limit = self._rate_limit_error(response)
            if rate_limit is not None:
                logger.warning("GitHub rate limit exhausted: %s", rate_limit)
                raise rate_limit

            if response.status_code >= 500:
                if attempt < self.MAX_RETRIES:
                    backoff = self._backoff(attempt)
                    logger.warning(
                        "Server error %d. Retrying in %.1fs (attempt %d/%d)",
                        response.status_code,
                        backoff,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise SourceUnavailable(
                    f"GitHub server error {response.status_code} after "
                    f"{self.MAX_RETRIES} retries"
                )

            if response.status_code >= 400:
                try:
                    error_body = response.json() if response.content else {}
                except (ValueError, UnicodeDecodeError):
                    error_body = {}
                message = (
                    error_body.get("message", response.text)
                    if isinstance(error_body, dict)
                    else response.text
                )
                raise GitHubClientError(f"GitHub API error {response.status_code}: {message}")

            return response

        raise SourceUnavailable("Request failed after all retries")

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        use_cache: bool = True,
    ) -> dict[str, Any]:
        """Make a JSON API request with conditional-request caching.

        Returns:
            Parsed JSON response
        """
        cache_key = self._cache_key(path, params) if use_cache and method == "GET" else ""
        extra_headers = self._get_conditional_headers(cache_key) if cache_key else {}

        response = await self._raw_request(
            method, path, params=params, extra_headers=extra_headers or None
        )

        if response.status_code == 304 and cache_key:
            cached = self._etag_cache.get(cache_key)
            if cached:
                return cached["data"]
            # 304 without cached data: drop conditional headers and ask again
            logger.warning("Received 304 but no cached data for %s, retrying", path)
            response = await self._raw_request(method, path, params=params)

        try:
            data = response.json()
        except ValueError as e:
            raise GitHubClientError(f"Invalid JSON from {path}: {e}") from e
        if cache_key:
            self._update_cache(cache_key, response, data)
        return data

    # --- Pagination ---

    async def _paginate(
        self,
        path: str,
        params: dict[str, str] | None = None,
        max_pages: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all pages of a paginated endpoint using Link headers.

        Args:
            path: API path
            params: Query parameters (per_page added automatically)
            max_pages: Page limit (default: MAX_PAGES)

        Returns:
            Concatenated list of all items across all pages

        Raises:
            TruncatedListingError: If more pages remain after max_pages
        """
        max_pages = max_pages or self.MAX_PAGES
        all_items: list[dict[str, Any]] = []
        params = dict(params or {})
        params["per_page"] = str(self.DEFAULT_PER_PAGE)

        current_path = path
        current_params: dict[str, str] | None = params

        for page in range(max_pages):
            response = await self._raw_request("GET", current_path, params=current_params)
            data = response.json()

            if isinstance(data, list):
                all_items.extend(data)
            elif isinstance(data, dict) and "items" in data:
                all_items.extend(data["items"])

            next_url = self._parse_next_link(response.headers.get("Link", ""))
            if not next_url:
                break

            # Absolute next URL carries its own query string
            current_path = next_url
            current_params = None

            logger.debug("Paginating: page %d, %d items so far", page + 1, len(all_items))
        else:
            raise TruncatedListingError(
                path,
                message=f"Listing of {path} has more than {max_pages} pages",
            )

        return all_items

    def _parse_link(self, link_header: str, rel: str) -> str | None:
        """Extract the URL for ``rel`` from a GitHub Link header.

        Format: <https://api.github.com/...?page=2>; rel="next", <...>; rel="last"

        URLs outside base_url are rejected to prevent SSRF via a crafted header.
        """
        if not link_header:
            return None

        for part in link_header.split(","):
            match = re.match(r'\s*<([^>]+)>;\s*rel="([^"]+)"', part.strip())
            if match and match.group(2) == rel:
                url = match.group(1)
                if not url.startswith(self.base_url + "/"):
                    logger.warning(
                        "Rejecting Link header URL not matching base_url: %.100s", url
                    )
                    return None
                return url
        return None

    def _parse_next_link(self, link_header: str) -> str | None:
        return self._parse_link(link_header, "next")

    # --- Metrics ---

    def get_rate_limit_status(self) -> dict[str, Any]:
        """Current rate limit status for metrics/logging."""
        reset_at = self._reset_datetime()
        return {
            "authenticated": self.authenticated,
            "primary_remaining": self._rate_limit_remaining,
            "primary_reset": reset_at.isoformat() if reset_at else None,
            "etag_cache_size": len(self._etag_cache),
        }

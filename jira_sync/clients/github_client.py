"""GitHub API client wrapper"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from jira_sync.clients.errors import GitHubClientError, GitHubNotFoundError, GitHubRateLimitingError

logger = logging.getLogger(__name__)


class Page:
    """One page of a paginated GitHub listing.

    Cursors are strings stored as-is in the sync state tables.
    """

    def __init__(self, items: List[Dict[str, Any]], next_cursor: Optional[str], total_count: Optional[int] = None):
        self.items = items
        self.next_cursor = next_cursor
        self.total_count = total_count

    @property
    def has_next_page(self) -> bool:
        return self.next_cursor is not None


def _parse_cursor(cursor: Optional[str], per_page: int) -> Tuple[int, int]:
    """Page number and page size of a cursor.

    Cursors are ``"<page>:<per_page>"`` so a sync keeps paging with the size it
    started with when the page size setting changes. A bare ``"<page>"`` uses
    ``per_page``.
    """
    if not cursor:
        return 1, per_page
    page, _, size = str(cursor).partition(":")
    try:
        return max(1, int(page)), (max(1, int(size)) if size else per_page)
    except ValueError:
        return 1, per_page


def _next_cursor(page: int, per_page: int) -> str:
    return f"{page + 1}:{per_page}"


class GitHubInstallationClient:
    """Wrapper for GitHub API operations on behalf of one app installation"""

    def __init__(
        self,
        api_url: str,
        installation_id: int,
        token_provider: Callable[[], str],
        timeout_sec: int = 30,
        session: Optional[requests.Session] = None,
    ):
        """Initialize GitHub client"""
        self.api_url = api_url.rstrip("/")
        self.installation_id = installation_id
        self.token_provider = token_provider
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Best-effort retry predicate for transient GitHub failures."""
        if isinstance(exc, GitHubRateLimitingError):
            # Rate limiting is handled by the queue, retrying here only burns quota
            return False
        if isinstance(exc, GitHubClientError):
            return exc.status in (500, 502, 503, 504)
        return False

    def _with_retries(self, fn, *, max_attempts: int = 3, base_delay_s: float = 0.5):
        """Run callable with small exponential backoff on transient errors."""
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= max_attempts or not self._should_retry(e):
                    raise
                time.sleep(base_delay_s * (2 ** (attempt - 1)))
                attempt += 1

    @staticmethod
    def _raise_for_response(response: requests.Response, path: str) -> None:
        if response.status_code < 400:
            return
        remaining = response.headers.get("x-ratelimit-remaining")
        if response.status_code in (403, 429) and remaining == "0":
            reset = int(response.headers.get("x-ratelimit-reset") or time.time())
            raise GitHubRateLimitingError(reset, status=response.status_code)
        if response.status_code == 404:
            raise GitHubNotFoundError(f"GitHub resource {path} not found")
        raise GitHubClientError(
            f"GitHub request {path} failed with status {response.status_code}", status=response.status_code
        )

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        def call():
            try:
                response = self.session.get(
                    f"{self.api_url}{path}",
                    params=params,
                    headers={
                        "Accept": "application/vnd.github+json",
                        "Authorization": f"token {self.token_provider()}",
                    },
                    timeout=self.timeout_sec,
                )
            except requests.RequestException as e:
                raise GitHubClientError(f"GitHub request {path} failed: {e}") from e
            self._raise_for_response(response, path)
            return response

        return self._with_retries(call)

    def _get_page(self, path: str, cursor: Optional[str], per_page: int, **params) -> Tuple[Any, Optional[str]]:
        page, per_page = _parse_cursor(cursor, per_page)
        response = self._get(path, params={**params, "per_page": per_page, "page": page})
        next_cursor = _next_cursor(page, per_page) if "next" in response.links else None
        return response.json(), next_cursor

    def get_rate_limit(self) -> Dict[str, Any]:
        """Current quota usage of the installation (``resources.core``, ``resources.graphql``...)"""
        return self._get("/rate_limit").json()

    def get_repositories_page(self, per_page: int, cursor: Optional[str] = None) -> Page:
        """Repositories the installation has access to"""
        page, per_page = _parse_cursor(cursor, per_page)
        data = self._get("/installation/repositories", params={"per_page": per_page, "page": page}).json()
        total_count = int(data.get("total_count") or 0)
        repositories = data.get("repositories") or []
        has_next = bool(repositories) and page * per_page < total_count
        return Page(repositories, _next_cursor(page, per_page) if has_next else None, total_count)

    def get_pull_requests_page(self, owner: str, repo: str, per_page: int, cursor: Optional[str] = None) -> Page:
        items, next_cursor = self._get_page(
            f"/repos/{owner}/{repo}/pulls", cursor, per_page, state="all", sort="created", direction="desc"
        )
        return Page(items, next_cursor)

    def get_branches_page(self, owner: str, repo: str, per_page: int, cursor: Optional[str] = None) -> Page:
        items, next_cursor = self._get_page(f"/repos/{owner}/{repo}/branches", cursor, per_page)
        return Page(items, next_cursor)

    def get_commits_page(
        self,
        owner: str,
        repo: str,
        per_page: int,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
        sha: Optional[str] = None,
    ) -> Page:
        """Commits, newest first. ``sha`` lists the history of a branch instead of the default branch."""
        params = {"since": since} if since else {}
        if sha:
            params["sha"] = sha
        items, next_cursor = self._get_page(f"/repos/{owner}/{repo}/commits", cursor, per_page, **params)
        return Page(items, next_cursor)

    def get_workflow_runs_page(self, owner: str, repo: str, per_page: int, cursor: Optional[str] = None) -> Page:
        data, next_cursor = self._get_page(f"/repos/{owner}/{repo}/actions/runs", cursor, per_page)
        return Page(data.get("workflow_runs") or [], next_cursor, data.get("total_count"))

    def get_deployments_page(self, owner: str, repo: str, per_page: int, cursor: Optional[str] = None) -> Page:
        items, next_cursor = self._get_page(f"/repos/{owner}/{repo}/deployments", cursor, per_page)
        return Page(items, next_cursor)

    def get_commit(self, owner: str, repo: str, sha: str) -> Dict[str, Any]:
        try:
            return self._get(f"/repos/{owner}/{repo}/commits/{sha}").json()
        except GitHubClientError as e:
            logger.error(f"Failed to get commit {sha} from {owner}/{repo}: {e}")
            raise


def create_installation_client(installation_id: int, app_config: Optional[Dict[str, Any]] = None) -> GitHubInstallationClient:
    """Build a client for the installation, against cloud or enterprise depending on the app config."""
    from jira_sync.config import settings

    api_url = (app_config or {}).get("gitHubApiUrl") or settings.github_api_url
    return GitHubInstallationClient(
        api_url,
        installation_id,
        token_provider=lambda: settings.github_installation_token or "",
        timeout_sec=settings.github_request_timeout_sec,
    )

"""Repository discovery backfill task"""

import time
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from jira_sync.clients.github_client import GitHubInstallationClient
from jira_sync.logger import ContextLogger
from jira_sync.models import RepoSyncState, Subscription
from jira_sync.sqs.types import BackfillMessagePayload
from jira_sync.sync.types import TaskResult


def _parse_github_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)


def _repo_sync_state_values(repo: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "repo_id": repo["id"],
        "repo_name": repo["name"],
        "repo_full_name": repo["full_name"],
        "repo_owner": (repo.get("owner") or {}).get("login") or repo["full_name"].split("/")[0],
        "repo_url": repo["html_url"],
        "repo_updated_at": _parse_github_datetime(repo.get("updated_at")),
    }


def get_repository_task(
    db: Session,
    parent_log: ContextLogger,
    github: GitHubInstallationClient,
    jira_host: str,
    _repository,
    cursor: Optional[str],
    per_page: int,
    payload: BackfillMessagePayload,
) -> TaskResult:
    """Fetch one page of the installation's repositories and record them for backfill."""
    log = parent_log.child(backfill_task="Repository")
    start_time = time.monotonic()
    log.info("Backfill task started")

    app_id = payload.github_app_config.github_app_id if payload.github_app_config else None
    subscription = Subscription.get_single_installation(db, jira_host, github.installation_id, app_id)
    if subscription is None:
        log.warning("Subscription has been removed, ignoring repository task.")
        return TaskResult()

    page = github.get_repositories_page(per_page, cursor)

    subscription.total_number_of_repos = page.total_count
    RepoSyncState.upsert_repositories(db, subscription, (_repo_sync_state_values(r) for r in page.items))

    log.debug(
        f"Repository Discovery Page Information: added={len(page.items)} has_next_page={page.has_next_page} "
        f"total_count={page.total_count} next_cursor={page.next_cursor}"
    )
    log.info(
        f"Backfill task complete in {(time.monotonic() - start_time) * 1000:.0f}ms, "
        f"{len(page.items)} repositories"
    )
    log.debug("Repository Discovery: Continuing" if page.has_next_page else "Repository Discovery: finished")

    # Nothing to send to Jira yet
    return TaskResult(edges=page.items, jira_payload=None, next_cursor=page.next_cursor)

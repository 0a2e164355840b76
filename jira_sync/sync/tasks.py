"""Per-repository backfill tasks.

Each task fetches one page of one entity type for a repository and turns it
into the Jira document for that page. Cursors and statuses are persisted by
the caller.
"""

from typing import Dict, Optional

from sqlalchemy.orm import Session

from jira_sync.clients.github_client import GitHubInstallationClient
from jira_sync.logger import ContextLogger
from jira_sync.sqs.types import BackfillMessagePayload
from jira_sync.sync.discovery import get_repository_task
from jira_sync.sync.transforms import (
    dev_info_payload,
    transform_branches,
    transform_commits,
    transform_deployments,
    transform_pull_requests,
    transform_workflow_runs,
)
from jira_sync.sync.types import TaskProcessor, TaskResult

MAX_BRANCH_COMMIT_HISTORY = 50


def get_pull_request_task(
    db: Session,
    log: ContextLogger,
    github: GitHubInstallationClient,
    jira_host: str,
    repository,
    cursor: Optional[str],
    per_page: int,
    payload: BackfillMessagePayload,
) -> TaskResult:
    page = github.get_pull_requests_page(repository.repo_owner, repository.repo_name, per_page, cursor)
    log.info(f"Fetched {len(page.items)} pull requests")
    return TaskResult(
        edges=page.items,
        jira_payload=dev_info_payload(
            repository, payload.installation_id, pullRequests=transform_pull_requests(page.items)
        ),
        next_cursor=page.next_cursor,
    )


def get_branch_task(db, log, github, jira_host, repository, cursor, per_page, payload) -> TaskResult:
    page = github.get_branches_page(repository.repo_owner, repository.repo_name, per_page, cursor)
    branches = transform_branches(page.items, repository)
    log.info(f"Fetched {len(page.items)} branches, {len(branches)} with issue keys")

    # Recent history of each branch referencing an issue, bounded by branch_commits_from_date
    commits: Dict[str, Dict] = {}
    for branch in branches:
        history = github.get_commits_page(
            repository.repo_owner,
            repository.repo_name,
            MAX_BRANCH_COMMIT_HISTORY,
            since=payload.branch_commits_from_date,
            sha=branch["name"],
        )
        for commit in transform_commits(history.items, branch["issueKeys"]):
            commits.setdefault(commit["id"], commit)

    return TaskResult(
        edges=page.items,
        jira_payload=dev_info_payload(
            repository, payload.installation_id, branches=branches, commits=list(commits.values())
        ),
        next_cursor=page.next_cursor,
    )


def get_commit_task(db, log, github, jira_host, repository, cursor, per_page, payload) -> TaskResult:
    # commits_from_date is the backfill horizon for the main branch history
    page = github.get_commits_page(
        repository.repo_owner, repository.repo_name, per_page, cursor, since=payload.commits_from_date
    )
    log.info(f"Fetched {len(page.items)} commits")
    return TaskResult(
        edges=page.items,
        jira_payload=dev_info_payload(repository, payload.installation_id, commits=transform_commits(page.items)),
        next_cursor=page.next_cursor,
    )


def get_build_task(db, log, github, jira_host, repository, cursor, per_page, payload) -> TaskResult:
    page = github.get_workflow_runs_page(repository.repo_owner, repository.repo_name, per_page, cursor)
    log.info(f"Fetched {len(page.items)} workflow runs")
    return TaskResult(
        edges=page.items,
        jira_payload=transform_workflow_runs(page.items, repository),
        next_cursor=page.next_cursor,
    )


def get_deployment_task(db, log, github, jira_host, repository, cursor, per_page, payload) -> TaskResult:
    page = github.get_deployments_page(repository.repo_owner, repository.repo_name, per_page, cursor)
    log.info(f"Fetched {len(page.items)} deployments")
    return TaskResult(
        edges=page.items,
        jira_payload=transform_deployments(page.items, repository),
        next_cursor=page.next_cursor,
    )


TASK_PROCESSORS: Dict[str, TaskProcessor] = {
    "repository": get_repository_task,
    "pull": get_pull_request_task,
    "branch": get_branch_task,
    "commit": get_commit_task,
    "build": get_build_task,
    "deployment": get_deployment_task,
}

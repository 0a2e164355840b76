"""Push webhook processing through the push queue"""

import asyncio
import time
from typing import Any, Dict, List, Optional

from jira_sync.clients.github_client import GitHubInstallationClient, create_installation_client
from jira_sync.clients.jira_client import JiraClient, get_jira_client
from jira_sync.logger import ContextLogger
from jira_sync.models import Subscription
from jira_sync.models.base import SessionLocal
from jira_sync.sqs.types import GitHubAppConfig, PushCommit, PushQueueMessagePayload, SQSMessageContext
from jira_sync.sync.transforms import jira_issue_key_parser

MAX_COMMIT_HISTORY = 10
# Jira keeps at most 10 files per commit
MAX_FILES_PER_COMMIT = 10
# Jira accepts up to 400 commits per request
MAX_COMMITS_PER_REQUEST = 400

_FILE_CHANGE_TYPES = {
    "added": "ADDED",
    "removed": "DELETED",
    "modified": "MODIFIED",
    "renamed": "MOVED",
    "copied": "COPIED",
    "changed": "MODIFIED",
    "unchanged": "UNKNOWN",
}


def create_job_data(
    push_webhook: Dict[str, Any], jira_host: str, github_app_config: Optional[GitHubAppConfig] = None
) -> PushQueueMessagePayload:
    """Push queue message for a push webhook.

    Only the repository fields and the shas of commits referencing an issue
    are kept; commit details are fetched from GitHub by the queue handler.
    """
    repository = push_webhook["repository"]
    shas = []
    for commit in push_webhook.get("commits") or []:
        issue_keys = jira_issue_key_parser(commit.get("message"))
        if issue_keys:
            shas.append(PushCommit(id=commit["id"], issue_keys=issue_keys))

    return PushQueueMessagePayload(
        repository={key: repository.get(key) for key in ("id", "name", "full_name", "html_url", "owner")},
        shas=shas,
        jira_host=jira_host,
        installation_id=push_webhook["installation"]["id"],
        webhook_id=push_webhook.get("webhookId") or "none",
        webhook_received=push_webhook.get("webhookReceived"),
        github_app_config=github_app_config,
    )


async def enqueue_push(push_webhook: Dict[str, Any], jira_host: str, github_app_config: Optional[GitHubAppConfig] = None):
    """Queue a push webhook for processing by the push queue handler"""
    from jira_sync.sqs.queues import sqs_queues

    if sqs_queues.push is None:
        raise RuntimeError("Push queue is not configured")
    return await sqs_queues.push.send_message(create_job_data(push_webhook, jira_host, github_app_config))


def _map_file(file: Dict[str, Any], repository: Dict[str, Any], sha: str) -> Optional[Dict[str, Any]]:
    filename = file.get("filename")
    if not filename:
        return None
    owner = (repository.get("owner") or {}).get("login")
    return {
        "path": filename[:1024],
        "changeType": _FILE_CHANGE_TYPES.get(file.get("status"), "UNKNOWN"),
        "linesAdded": file.get("additions"),
        "linesRemoved": file.get("deletions"),
        "url": file.get("blob_url") or f"https://github.com/{owner}/{repository.get('name')}/blob/{sha}/{filename}",
    }


def transform_push_commit(commit: Dict[str, Any], repository: Dict[str, Any], issue_keys: List[str]) -> Dict[str, Any]:
    files = commit.get("files") or []
    github_author = (commit.get("commit") or {}).get("author") or {}
    sha = commit["sha"]
    jira_commit = {
        "hash": sha,
        "message": ((commit.get("commit") or {}).get("message") or "")[:1024],
        "author": {"name": github_author.get("name") or "unknown", "email": github_author.get("email")},
        "authorTimestamp": github_author.get("date"),
        "displayId": sha[:6],
        "fileCount": len(files),
        "files": [f for f in (_map_file(file, repository, sha) for file in files[:MAX_FILES_PER_COMMIT]) if f],
        "id": sha,
        "issueKeys": issue_keys,
        "url": commit.get("html_url"),
        "updateSequenceId": int(time.time() * 1000),
    }
    # Merge commits have two or more parents
    if len(commit.get("parents") or []) > 1:
        jira_commit["flags"] = ["MERGE_COMMIT"]
    return jira_commit


def process_push(
    github: GitHubInstallationClient, jira: JiraClient, payload: PushQueueMessagePayload, log: ContextLogger
) -> int:
    """Fetch the pushed commits and send them to Jira. Returns the number of commits sent."""
    repository = payload.repository
    owner = (repository.get("owner") or {}).get("login")
    log.info(f"Processing push, {len(payload.shas)} shas")

    commits = []
    for sha in payload.shas[:MAX_COMMIT_HISTORY]:
        log.info(f"Calling GitHub to fetch commit info {sha.id}")
        commit = github.get_commit(owner, repository["name"], sha.id)
        commits.append(transform_push_commit(commit, repository, sha.issue_keys))

    for start in range(0, len(commits), MAX_COMMITS_PER_REQUEST):
        chunk = commits[start : start + MAX_COMMITS_PER_REQUEST]
        log.info("Sending data to Jira")
        jira.submit_dev_info(
            {
                "preventTransitions": False,
                "operationType": "NORMAL",
                "repositories": [
                    {
                        "id": str(repository["id"]),
                        "name": repository.get("full_name"),
                        "url": repository.get("html_url"),
                        "updateSequenceId": int(time.time() * 1000),
                        "commits": chunk,
                    }
                ],
                "properties": {"installationId": payload.installation_id},
            }
        )
    return len(commits)


def handle_push(payload: PushQueueMessagePayload, log: ContextLogger) -> None:
    app_id = payload.github_app_config.github_app_id if payload.github_app_config else None
    db = SessionLocal()
    try:
        subscription = Subscription.get_single_installation(db, payload.jira_host, payload.installation_id, app_id)
    finally:
        db.close()
    if subscription is None:
        log.info("No subscription was found, stop processing the push")
        return

    app_config = payload.github_app_config.to_message() if payload.github_app_config else None
    github = create_installation_client(payload.installation_id, app_config)
    process_push(github, get_jira_client(payload.jira_host), payload, log)


async def push_queue_message_handler(context: SQSMessageContext) -> None:
    payload = PushQueueMessagePayload.model_validate(context.payload)
    log = context.log.child(repository=payload.repository.get("full_name"))
    log.info("Handling push message from the SQS queue")
    await asyncio.to_thread(handle_push, payload, log)

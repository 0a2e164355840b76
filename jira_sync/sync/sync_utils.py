"""Starting and restarting backfill syncs"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from jira_sync.config import settings
from jira_sync.flags import NumberFlags, number_flag
from jira_sync.logger import ContextLogger, get_logger
from jira_sync.models import GitHubServerApp, RepoSyncState, Subscription, SyncStatus
from jira_sync.sqs.types import BackfillMessagePayload, GitHubAppConfig
from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date
from jira_sync.sync.types import SYNC_TYPES, TASK_TYPES

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime for DB + comparisons."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def backfill_from_date_to_bucket(backfill_from: Optional[datetime]) -> str:
    """Coarse metric tag for how far back a backfill goes"""
    if backfill_from is None:
        return "all-time"
    if backfill_from.tzinfo is not None:
        backfill_from = backfill_from.astimezone(timezone.utc).replace(tzinfo=None)
    days = (_utcnow() - backfill_from).days
    for limit in (1, 7, 30, 90, 180, 365):
        if days <= limit:
            return f"{limit}d"
    return "older"


def validate_sync_request(sync_type: Optional[str], target_tasks: Optional[List[str]]) -> None:
    if sync_type is not None and sync_type not in SYNC_TYPES:
        raise ValueError(f"Invalid sync type {sync_type!r}")
    invalid = [t for t in target_tasks or [] if t not in TASK_TYPES]
    if invalid:
        raise ValueError(f"Invalid target tasks {invalid}")


def _reset_targeted_tasks(
    db: Session, subscription: Subscription, sync_type: Optional[str], target_tasks: Optional[List[str]]
) -> None:
    if not target_tasks:
        return

    # Per repository tasks: a full sync resets cursor and status,
    # a partial sync only the status (continues from the existing cursor)
    repo_sync_tasks = [task for task in target_tasks if task != "repository"]
    values: Dict[str, Optional[str]] = {}
    for task in repo_sync_tasks:
        if sync_type == "full":
            values[f"{task}_cursor"] = None
        values[f"{task}_status"] = None
    if values:
        RepoSyncState.update_from_subscription(db, subscription, values)

    # Repository discovery state lives on the subscription
    if "repository" in target_tasks:
        subscription.repository_status = None
        if sync_type == "full":
            subscription.total_number_of_repos = None
            subscription.repository_cursor = None


def _reset_failed_code(
    db: Session, subscription: Subscription, sync_type: Optional[str], target_tasks: Optional[List[str]]
) -> None:
    # An untargeted full sync has already removed its repo sync states
    if sync_type == "full" and not target_tasks:
        return
    RepoSyncState.update_from_subscription(db, subscription, {"failed_code": None})


def get_commit_since_date(
    jira_host: str, flag: NumberFlags, commits_from_date: Optional[datetime] = None
) -> Optional[datetime]:
    """Explicit date if given, else now minus the configured lookback, else no cutoff."""
    if commits_from_date is not None:
        return commits_from_date
    time_cutoff_msecs = number_flag(flag, None, jira_host)
    if not time_cutoff_msecs or time_cutoff_msecs == -1:
        return None
    return _utcnow() - timedelta(milliseconds=time_cutoff_msecs)


def cloud_github_app_config() -> GitHubAppConfig:
    return GitHubAppConfig(
        github_app_id=None,
        app_id=settings.github_app_id,
        client_id=settings.github_client_id,
        github_base_url=settings.github_base_url,
        github_api_url=settings.github_api_url,
        uuid=None,
    )


def ghes_github_app_config(app: GitHubServerApp) -> GitHubAppConfig:
    base_url = app.github_base_url.rstrip("/")
    return GitHubAppConfig(
        github_app_id=app.id,
        app_id=app.app_id,
        uuid=app.uuid,
        client_id=app.github_client_id,
        github_base_url=base_url,
        github_api_url=f"{base_url}/api/v3",
    )


def get_github_app_config(db: Session, subscription: Subscription) -> GitHubAppConfig:
    if not subscription.github_app_id:
        return cloud_github_app_config()

    app = db.query(GitHubServerApp).filter(GitHubServerApp.id == subscription.github_app_id).first()
    if app is None:
        logger.error(
            f"Cannot find gitHubServerApp by pk {subscription.github_app_id} for subscription {subscription.id}"
        )
        raise ValueError("Error during find and start sync. Reason: Cannot find ghes record from subscription.")
    return ghes_github_app_config(app)


async def find_or_start_sync(
    db: Session,
    subscription: Subscription,
    sync_type: Optional[str] = None,
    commits_from_date: Optional[datetime] = None,
    target_tasks: Optional[List[str]] = None,
    metric_tags: Optional[Dict[str, str]] = None,
    backfill_queue=None,
    log: Optional[ContextLogger] = None,
) -> BackfillMessagePayload:
    """Reset the subscription's sync state and enqueue the first backfill message."""
    log = log or get_logger(__name__, subscription_id=subscription.id, jira_host=subscription.jira_host)
    validate_sync_request(sync_type, target_tasks)
    if commits_from_date is not None and commits_from_date.tzinfo is not None:
        commits_from_date = commits_from_date.astimezone(timezone.utc).replace(tzinfo=None)
    if backfill_queue is None:
        from jira_sync.sqs.queues import sqs_queues

        backfill_queue = sqs_queues.backfill
        if backfill_queue is None:
            raise RuntimeError("Backfill queue is not configured")

    jira_host = subscription.jira_host
    is_initial_sync = subscription.sync_status is None

    subscription.sync_status = SyncStatus.PENDING
    subscription.number_of_synced_repos = 0
    subscription.sync_warning = None
    log.info(f"Starting sync (sync_type={sync_type}, target_tasks={target_tasks})")

    _reset_targeted_tasks(db, subscription, sync_type, target_tasks)

    if sync_type == "full" and not target_tasks:
        subscription.total_number_of_repos = None
        subscription.repository_cursor = None
        subscription.repository_status = None
        # Starting anew: no per-repository state survives
        RepoSyncState.delete_from_subscription(db, subscription)

    _reset_failed_code(db, subscription, sync_type, target_tasks)

    github_app_config = get_github_app_config(db, subscription)

    subscription.backfill_since = calc_new_backfill_since_date(
        subscription.backfill_since, commits_from_date, sync_type, is_initial_sync
    )
    main_commits_from_date = get_commit_since_date(jira_host, NumberFlags.SYNC_MAIN_COMMIT_TIME_LIMIT, commits_from_date)
    branch_commits_from_date = get_commit_since_date(
        jira_host, NumberFlags.SYNC_BRANCH_COMMIT_TIME_LIMIT, commits_from_date
    )
    db.commit()

    payload = BackfillMessagePayload(
        installation_id=subscription.github_installation_id,
        jira_host=jira_host,
        sync_type=sync_type,
        start_time=to_iso(_utcnow()),
        commits_from_date=to_iso(main_commits_from_date),
        branch_commits_from_date=to_iso(branch_commits_from_date),
        target_tasks=target_tasks or None,
        github_app_config=github_app_config,
        metric_tags={
            **(metric_tags or {}),
            "backfillFrom": backfill_from_date_to_bucket(main_commits_from_date),
            "syncType": str(sync_type) if sync_type else "empty",
        },
    )
    await backfill_queue.send_message(payload, 0, log)
    return payload

"""Backfill queue message handler.

Each backfill message processes one page of one task, persists the task's
cursor, and enqueues a continuation message carrying the same payload. The
next task is always derived from persisted state, so a redelivered or
duplicated message resumes where the last committed page left off.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from jira_sync import metrics
from jira_sync.clients.errors import GitHubClientError, GitHubRateLimitingError, JiraClientError
from jira_sync.clients.github_client import create_installation_client
from jira_sync.clients.jira_client import JiraClient, get_jira_client
from jira_sync.config import settings
from jira_sync.flags import NumberFlags, number_flag
from jira_sync.logger import ContextLogger
from jira_sync.models import RepoSyncState, Subscription, SyncStatus
from jira_sync.models.base import SessionLocal
from jira_sync.sqs.error_handlers import UNRETRYABLE_STATUS_CODES, jira_and_github_errors_handler
from jira_sync.sqs.types import BackfillMessagePayload, ErrorHandlingResult, SQSMessageContext, SqsTimeoutError
from jira_sync.sync.tasks import TASK_PROCESSORS
from jira_sync.sync.types import (
    TASK_STATUS_COMPLETE,
    TASK_STATUS_FAILED,
    TASK_STATUS_PENDING,
    TASK_TYPES,
    Task,
    TaskResult,
)

SendMessage = Callable[..., Awaitable[Dict[str, Any]]]

_DONE_STATUSES = (TASK_STATUS_COMPLETE, TASK_STATUS_FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _targeted(target_tasks: Optional[List[str]]) -> List[str]:
    return [task for task in TASK_TYPES if not target_tasks or task in target_tasks]


def get_next_task(db: Session, subscription: Subscription, target_tasks: Optional[List[str]] = None) -> Optional[Task]:
    """First unfinished task: repository discovery, then each repository's tasks in order."""
    tasks = _targeted(target_tasks)

    if "repository" in tasks and subscription.repository_status not in _DONE_STATUSES:
        return Task(task="repository", cursor=subscription.repository_cursor)

    repo_tasks = [task for task in tasks if task != "repository"]
    if not repo_tasks:
        return None

    for repo_state in RepoSyncState.find_all_from_subscription(db, subscription):
        for task in repo_tasks:
            if getattr(repo_state, f"{task}_status") not in _DONE_STATUSES:
                return Task(
                    task=task,
                    repository_id=repo_state.repo_id,
                    cursor=getattr(repo_state, f"{task}_cursor"),
                    repository=repo_state,
                )
    return None


def submit_to_jira(jira: JiraClient, task_type: str, jira_payload: Dict[str, Any]) -> None:
    if task_type == "build":
        jira.submit_builds(jira_payload)
    elif task_type == "deployment":
        jira.submit_deployments(jira_payload)
    else:
        jira.submit_dev_info(jira_payload)


def update_task_status(db: Session, subscription: Subscription, task: Task, result: TaskResult) -> None:
    """Advance the task's cursor, or mark it complete after the last page."""
    status = TASK_STATUS_PENDING if result.has_next_page else TASK_STATUS_COMPLETE

    if task.task == "repository":
        subscription.repository_status = status
        if result.next_cursor is not None:
            subscription.repository_cursor = result.next_cursor
        return

    repo_state = task.repository
    setattr(repo_state, f"{task.task}_status", status)
    # The last page has no next cursor; keep the one that got us there
    if result.next_cursor is not None:
        setattr(repo_state, f"{task.task}_cursor", result.next_cursor)
    db.flush()


def count_synced_repos(db: Session, subscription: Subscription, target_tasks: Optional[List[str]] = None) -> int:
    repo_tasks = [task for task in _targeted(target_tasks) if task != "repository"]
    return sum(
        1
        for repo_state in RepoSyncState.find_all_from_subscription(db, subscription)
        if all(getattr(repo_state, f"{task}_status") in _DONE_STATUSES for task in repo_tasks)
    )


def _failed_code(error: Exception) -> str:
    if isinstance(error, GitHubRateLimitingError):
        return "RATE_LIMITED"
    if isinstance(error, SqsTimeoutError):
        return "TIMEOUT"
    status = getattr(error, "status", None)
    if status == 404:
        return "NOT_FOUND"
    if status in (401, 403):
        return "PERMISSIONS_ERROR"
    if isinstance(error, (GitHubClientError, JiraClientError)) and status:
        return f"HTTP_{status}"
    return "UNKNOWN"


def mark_sync_complete(
    db: Session, subscription: Subscription, payload: BackfillMessagePayload, log: ContextLogger
) -> None:
    if subscription.sync_status == SyncStatus.COMPLETE:
        # Duplicate delivery of the final message
        log.info("Sync already complete")
        return

    subscription.sync_status = SyncStatus.COMPLETE
    subscription.number_of_synced_repos = count_synced_repos(db, subscription, payload.target_tasks)
    if payload.sync_type == "full" and not payload.target_tasks and not payload.commits_from_date:
        # All history is in Jira now
        subscription.backfill_since = None

    failed = (
        db.query(RepoSyncState)
        .filter(RepoSyncState.subscription_id == subscription.id, RepoSyncState.failed_code.isnot(None))
        .count()
    )
    if failed:
        subscription.sync_warning = f"{failed} repositories could not be fully synced"

    metrics.sync_status.labels(status=SyncStatus.COMPLETE.value).inc()
    if payload.start_time:
        started = datetime.fromisoformat(payload.start_time)
        if started.tzinfo is not None:
            started = started.astimezone(timezone.utc).replace(tzinfo=None)
        duration_sec = (_utcnow() - started).total_seconds()
        metrics.full_sync_duration.observe(duration_sec)
        log.info(f"Sync status is complete, took {duration_sec:.0f}s")
    else:
        log.info("Sync status is complete")


def process_installation_step(
    db: Session,
    payload: BackfillMessagePayload,
    log: ContextLogger,
    github_factory=create_installation_client,
    jira_factory=get_jira_client,
) -> bool:
    """Run one page of the next backfill task. Returns True when a continuation is needed."""
    app_id = payload.github_app_config.github_app_id if payload.github_app_config else None
    subscription = Subscription.get_single_installation(db, payload.jira_host, payload.installation_id, app_id)
    if subscription is None:
        log.info("Subscription has been removed, ignoring backfill job.")
        return False

    task = get_next_task(db, subscription, payload.target_tasks)
    if task is None:
        mark_sync_complete(db, subscription, payload, log)
        db.commit()
        return False

    if subscription.sync_status != SyncStatus.ACTIVE:
        subscription.sync_status = SyncStatus.ACTIVE

    task_log = log.child(task=task.task, repository_id=task.repository_id)
    per_page = int(number_flag(NumberFlags.BACKFILL_PAGE_SIZE, settings.backfill_page_size, payload.jira_host))
    app_config = payload.github_app_config.to_message() if payload.github_app_config else None
    github = github_factory(payload.installation_id, app_config)

    processor = TASK_PROCESSORS[task.task]
    result = processor(db, task_log, github, payload.jira_host, task.repository, task.cursor, per_page, payload)

    if result.jira_payload:
        submit_to_jira(jira_factory(payload.jira_host), task.task, result.jira_payload)

    update_task_status(db, subscription, task, result)
    if task.task != "repository" and not result.has_next_page:
        subscription.number_of_synced_repos = count_synced_repos(db, subscription, payload.target_tasks)
    db.commit()
    task_log.info(f"Processed {len(result.edges)} items, has_next_page={result.has_next_page}")
    return True


def mark_task_failed(db: Session, payload: BackfillMessagePayload, error: Exception, log: ContextLogger) -> bool:
    """Give up on the current task. Returns True when the rest of the sync can continue."""
    app_id = payload.github_app_config.github_app_id if payload.github_app_config else None
    subscription = Subscription.get_single_installation(db, payload.jira_host, payload.installation_id, app_id)
    if subscription is None:
        return False

    task = get_next_task(db, subscription, payload.target_tasks)
    if task is None:
        return False

    failed_code = _failed_code(error)
    log.warning(f"Marking {task.task} task as failed ({failed_code}): {error!r}", fields={"repository_id": task.repository_id})

    if task.task == "repository":
        # Without discovery there is nothing reliable to sync
        subscription.repository_status = TASK_STATUS_FAILED
        subscription.sync_status = SyncStatus.FAILED
        subscription.sync_warning = f"Repository discovery failed: {failed_code}"
        metrics.sync_status.labels(status=SyncStatus.FAILED.value).inc()
        db.commit()
        return False

    setattr(task.repository, f"{task.task}_status", TASK_STATUS_FAILED)
    task.repository.failed_code = failed_code
    db.commit()
    return True


def mark_sync_failed(db: Session, payload: BackfillMessagePayload, error: Exception, log: ContextLogger) -> None:
    """Stop the whole sync, e.g. when Jira no longer accepts data for the site."""
    app_id = payload.github_app_config.github_app_id if payload.github_app_config else None
    subscription = Subscription.get_single_installation(db, payload.jira_host, payload.installation_id, app_id)
    if subscription is None:
        return

    failed_code = _failed_code(error)
    log.warning(f"Stopping the sync ({failed_code}): {error!r}")
    subscription.sync_status = SyncStatus.FAILED
    subscription.sync_warning = f"Jira rejected the backfill: {failed_code}"
    metrics.sync_status.labels(status=SyncStatus.FAILED.value).inc()
    db.commit()


class BackfillProcessor:
    """Backfill queue handler.

    ``send`` enqueues continuation messages; it is usually the backfill
    queue's ``send_message`` and may be bound after construction.
    """

    def __init__(
        self,
        send: Optional[SendMessage] = None,
        session_factory=SessionLocal,
        github_factory=create_installation_client,
        jira_factory=get_jira_client,
    ):
        self.send = send
        self.session_factory = session_factory
        self.github_factory = github_factory
        self.jira_factory = jira_factory

    async def __call__(self, context: SQSMessageContext) -> None:
        payload = BackfillMessagePayload.model_validate(context.payload)
        if await asyncio.to_thread(
            self._run_in_session, process_installation_step, payload, context.log, self.github_factory, self.jira_factory
        ):
            await self._send_continuation(context)

    async def handle_error(self, error: Exception, context: SQSMessageContext) -> ErrorHandlingResult:
        """Classify the error; a task that won't be retried is marked failed so the sync moves on."""
        result = await jira_and_github_errors_handler(error, context)
        if result.retryable and not context.last_attempt:
            return result

        payload = BackfillMessagePayload.model_validate(context.payload)
        if isinstance(error, JiraClientError) and error.status in UNRETRYABLE_STATUS_CODES:
            # Every remaining task would be rejected the same way
            await asyncio.to_thread(self._run_in_session, mark_sync_failed, payload, error, context.log)
            return result

        if result.is_failure:
            metrics.emit_webhook_failed_metrics("backfill")
        if await asyncio.to_thread(self._run_in_session, mark_task_failed, payload, error, context.log):
            await self._send_continuation(context)
        return ErrorHandlingResult(is_failure=False, retryable=False)

    async def _send_continuation(self, context: SQSMessageContext) -> None:
        if self.send is None:
            raise RuntimeError("Backfill processor is not bound to a queue")
        continuation = {key: value for key, value in context.payload.items() if key != "rateLimited"}
        await self.send(continuation, 0, context.log)

    def _run_in_session(self, fn, *args):
        db = self.session_factory()
        try:
            return fn(db, *args)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

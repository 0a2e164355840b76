"""Sync management endpoints"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from jira_sync.models import RepoSyncState, Subscription
from jira_sync.models.base import get_db
from jira_sync.sync.sync_utils import find_or_start_sync, validate_sync_request

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_type: Optional[str] = Field(None, alias="syncType")
    commits_from_date: Optional[datetime] = Field(None, alias="commitsFromDate")
    target_tasks: Optional[List[str]] = Field(None, alias="targetTasks")


class SyncStatusResponse(BaseModel):
    id: int
    jira_host: str
    github_installation_id: int
    sync_status: Optional[str] = None
    sync_warning: Optional[str] = None
    number_of_synced_repos: Optional[int] = None
    total_number_of_repos: Optional[int] = None
    backfill_since: Optional[datetime] = None
    failed_repos: int = 0


def _get_subscription(db: Session, subscription_id: int) -> Subscription:
    subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if not subscription:
        raise HTTPException(status_code=404, detail=f"Subscription {subscription_id} not found")
    return subscription


@router.post("/{subscription_id}")
async def trigger_sync(
    subscription_id: int,
    request: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
):
    """Start (or restart) the backfill of a subscription"""
    request = request or SyncRequest()
    subscription = _get_subscription(db, subscription_id)
    try:
        validate_sync_request(request.sync_type, request.target_tasks)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        payload = await find_or_start_sync(
            db,
            subscription,
            sync_type=request.sync_type,
            commits_from_date=request.commits_from_date,
            target_tasks=request.target_tasks,
            metric_tags={"source": "api"},
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "accepted", "job": payload.to_message()}


@router.get("/{subscription_id}", response_model=SyncStatusResponse)
def get_sync_status(subscription_id: int, db: Session = Depends(get_db)):
    """Backfill progress of a subscription"""
    subscription = _get_subscription(db, subscription_id)
    failed_repos = (
        db.query(RepoSyncState)
        .filter(RepoSyncState.subscription_id == subscription.id, RepoSyncState.failed_code.isnot(None))
        .count()
    )
    return SyncStatusResponse(
        id=subscription.id,
        jira_host=subscription.jira_host,
        github_installation_id=subscription.github_installation_id,
        sync_status=subscription.sync_status.value if subscription.sync_status else None,
        sync_warning=subscription.sync_warning,
        number_of_synced_repos=subscription.number_of_synced_repos,
        total_number_of_repos=subscription.total_number_of_repos,
        backfill_since=subscription.backfill_since,
        failed_repos=failed_repos,
    )

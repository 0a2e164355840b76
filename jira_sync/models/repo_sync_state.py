"""Per-repository backfill state"""

from datetime import datetime
from typing import Any, Dict, Iterable, List

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Session, relationship

from jira_sync.models.base import Base

# Tasks tracked per repository (the "repository" task lives on the subscription)
REPO_TASKS = ("pull", "branch", "commit", "build", "deployment")


class RepoSyncState(Base):
    """Cursor and status of every backfill task for one repository"""

    __tablename__ = "repo_sync_states"
    __table_args__ = (
        UniqueConstraint("subscription_id", "repo_id", name="uq_repo_sync_states_subscription_repo"),
    )

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)

    # Repository
    repo_id = Column(Integer, nullable=False)
    repo_name = Column(String, nullable=False)
    repo_full_name = Column(String, nullable=False)
    repo_owner = Column(String, nullable=False)
    repo_url = Column(String, nullable=False)
    repo_updated_at = Column(DateTime, nullable=True)

    # Task progress
    pull_cursor = Column(String, nullable=True)
    pull_status = Column(String, nullable=True)
    branch_cursor = Column(String, nullable=True)
    branch_status = Column(String, nullable=True)
    commit_cursor = Column(String, nullable=True)
    commit_status = Column(String, nullable=True)
    build_cursor = Column(String, nullable=True)
    build_status = Column(String, nullable=True)
    deployment_cursor = Column(String, nullable=True)
    deployment_status = Column(String, nullable=True)
    failed_code = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscription = relationship("Subscription")

    @classmethod
    def find_all_from_subscription(cls, db: Session, subscription) -> List["RepoSyncState"]:
        return (
            db.query(cls)
            .filter(cls.subscription_id == subscription.id)
            .order_by(cls.repo_updated_at.desc(), cls.id.asc())
            .all()
        )

    @classmethod
    def delete_from_subscription(cls, db: Session, subscription) -> int:
        return (
            db.query(cls)
            .filter(cls.subscription_id == subscription.id)
            .delete(synchronize_session=False)
        )

    @classmethod
    def update_from_subscription(cls, db: Session, subscription, values: Dict[str, Any]) -> int:
        return (
            db.query(cls)
            .filter(cls.subscription_id == subscription.id)
            .update(values, synchronize_session=False)
        )

    @classmethod
    def upsert_repositories(cls, db: Session, subscription, repositories: Iterable[Dict[str, Any]]) -> List["RepoSyncState"]:
        """Create or refresh rows keyed by (subscription, repo id).

        Task cursors and statuses of existing rows are left untouched, so
        replaying a discovery page never rewinds progress.
        """
        repositories = list(repositories)
        if not repositories:
            return []

        ids = [int(r["repo_id"]) for r in repositories]
        existing = {
            row.repo_id: row
            for row in db.query(cls)
            .filter(cls.subscription_id == subscription.id, cls.repo_id.in_(ids))
            .all()
        }

        rows = []
        for repo in repositories:
            row = existing.get(int(repo["repo_id"]))
            if row is None:
                row = cls(subscription_id=subscription.id)
                db.add(row)
            for key, value in repo.items():
                setattr(row, key, value)
            rows.append(row)
        db.flush()
        return rows

    def __repr__(self):
        return f"<RepoSyncState(repo='{self.repo_full_name}', subscription={self.subscription_id})>"

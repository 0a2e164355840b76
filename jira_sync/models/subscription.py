"""Subscription model"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Session, relationship

from jira_sync.models.base import Base


class SyncStatus(str, enum.Enum):
    """Backfill status of a subscription"""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class Subscription(Base):
    """A GitHub installation connected to a Jira site"""

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "jira_host", "github_installation_id", "github_app_id", name="uq_subscriptions_host_installation_app"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    jira_host = Column(String, nullable=False, index=True)
    github_installation_id = Column(Integer, nullable=False, index=True)
    # NULL for GitHub cloud, otherwise the enterprise server app
    github_app_id = Column(Integer, ForeignKey("github_server_apps.id"), nullable=True)

    # Backfill state
    sync_status = Column(Enum(SyncStatus), nullable=True)
    sync_warning = Column(Text, nullable=True)
    number_of_synced_repos = Column(Integer, nullable=True)
    total_number_of_repos = Column(Integer, nullable=True)
    repository_cursor = Column(String, nullable=True)
    repository_status = Column(String, nullable=True)
    backfill_since = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    github_server_app = relationship("GitHubServerApp")

    @classmethod
    def get_single_installation(
        cls, db: Session, jira_host: str, installation_id: int, github_app_id: Optional[int] = None
    ) -> Optional["Subscription"]:
        return (
            db.query(cls)
            .filter(
                cls.jira_host == jira_host,
                cls.github_installation_id == installation_id,
                cls.github_app_id == github_app_id,
            )
            .first()
        )

    def __repr__(self):
        return f"<Subscription(jira_host='{self.jira_host}', installation={self.github_installation_id})>"

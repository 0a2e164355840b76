"""GitHub Enterprise Server app model"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from jira_sync.models.base import Base


class GitHubServerApp(Base):
    """GitHub app registered on an enterprise server"""

    __tablename__ = "github_server_apps"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String, unique=True, nullable=False)
    app_id = Column(Integer, nullable=False)
    github_base_url = Column(String, nullable=False)
    github_client_id = Column(String, nullable=False)
    github_app_name = Column(String, nullable=True)
    installation_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<GitHubServerApp(app_id={self.app_id}, url='{self.github_base_url}')>"

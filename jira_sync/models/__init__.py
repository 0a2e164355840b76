"""Database models"""

from jira_sync.models.base import Base
from jira_sync.models.github_server_app import GitHubServerApp
from jira_sync.models.repo_sync_state import RepoSyncState
from jira_sync.models.subscription import Subscription, SyncStatus

__all__ = [
    "Base",
    "GitHubServerApp",
    "RepoSyncState",
    "Subscription",
    "SyncStatus",
]

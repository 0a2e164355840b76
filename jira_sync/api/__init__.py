"""API routes"""

from jira_sync.api import sync

__all__ = ["sync"]

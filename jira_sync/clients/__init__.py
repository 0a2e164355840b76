"""GitHub and Jira clients"""

from jira_sync.clients.errors import (
    GitHubClientError,
    GitHubNotFoundError,
    GitHubRateLimitingError,
    JiraClientError,
)
from jira_sync.clients.github_client import GitHubInstallationClient, create_installation_client
from jira_sync.clients.jira_client import JiraClient, get_jira_client

__all__ = [
    "GitHubClientError",
    "GitHubInstallationClient",
    "GitHubNotFoundError",
    "GitHubRateLimitingError",
    "JiraClient",
    "JiraClientError",
    "create_installation_client",
    "get_jira_client",
]

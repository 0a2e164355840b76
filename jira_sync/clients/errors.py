"""Errors raised by the GitHub and Jira clients.

Queue error handling matches on these types only.
"""

from typing import Optional


class GitHubClientError(Exception):
    """Failed GitHub request. ``status`` is None when no response was received."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class GitHubNotFoundError(GitHubClientError):
    def __init__(self, message: str = "Resource not found on GitHub"):
        super().__init__(message, status=404)


class GitHubRateLimitingError(GitHubClientError):
    """GitHub refused the request because the installation quota is used up.

    ``rate_limit_reset`` is the epoch second when the quota resets.
    """

    def __init__(self, rate_limit_reset: int, status: int = 403):
        super().__init__(f"GitHub rate limit exceeded, resets at {rate_limit_reset}", status=status)
        self.rate_limit_reset = rate_limit_reset


class JiraClientError(Exception):
    """Failed Jira request. ``status`` is None when no response was received."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

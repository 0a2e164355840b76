"""Backfill task types"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

# Valid task types, "repository" (discovery) first
TASK_TYPES = ("repository", "pull", "branch", "commit", "build", "deployment")
SYNC_TYPES = ("full", "partial")

TASK_STATUS_PENDING = "pending"
TASK_STATUS_COMPLETE = "complete"
TASK_STATUS_FAILED = "failed"


@dataclass
class Task:
    """One page worth of resumable backfill work"""

    task: str
    repository_id: Optional[int] = None
    cursor: Optional[str] = None
    # RepoSyncState row, None for repository discovery
    repository: Any = None


@dataclass
class TaskResult:
    edges: List[Dict[str, Any]] = field(default_factory=list)
    jira_payload: Optional[Dict[str, Any]] = None
    next_cursor: Optional[str] = None

    @property
    def has_next_page(self) -> bool:
        return self.next_cursor is not None


# (db, log, github, jira_host, repository, cursor, per_page, payload) -> TaskResult
TaskProcessor = Callable[..., TaskResult]

"""Queue message payloads and delivery contexts"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from jira_sync.logger import ContextLogger


class SqsTimeoutError(Exception):
    """The message handler did not finish within the queue timeout"""

    def __init__(self, timeout_sec: float = 0):
        super().__init__(f"Message processing timed out after {timeout_sec} seconds")
        self.timeout_sec = timeout_sec


# =============================================================================
# Wire payloads (JSON message bodies, camelCase on the wire)
# =============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_message(self) -> Dict[str, Any]:
        """JSON-ready dict using the wire field names"""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class GitHubAppConfig(_Payload):
    github_app_id: Optional[int] = Field(None, alias="gitHubAppId")
    app_id: Optional[int] = Field(None, alias="appId")
    uuid: Optional[str] = None
    client_id: Optional[str] = Field(None, alias="clientId")
    github_base_url: str = Field(alias="gitHubBaseUrl")
    github_api_url: str = Field(alias="gitHubApiUrl")


class BaseMessagePayload(_Payload):
    jira_host: str = Field(alias="jiraHost")
    installation_id: Optional[int] = Field(None, alias="installationId")
    webhook_id: Optional[str] = Field(None, alias="webhookId")
    # epoch milliseconds
    webhook_received: Optional[int] = Field(None, alias="webhookReceived")
    github_app_config: Optional[GitHubAppConfig] = Field(None, alias="gitHubAppConfig")
    rate_limited: Optional[bool] = Field(None, alias="rateLimited")


class BackfillMessagePayload(BaseMessagePayload):
    sync_type: Optional[str] = Field(None, alias="syncType")
    start_time: Optional[str] = Field(None, alias="startTime")
    commits_from_date: Optional[str] = Field(None, alias="commitsFromDate")
    branch_commits_from_date: Optional[str] = Field(None, alias="branchCommitsFromDate")
    target_tasks: Optional[List[str]] = Field(None, alias="targetTasks")
    metric_tags: Optional[Dict[str, str]] = Field(None, alias="metricTags")


class PushCommit(_Payload):
    id: str
    issue_keys: List[str] = Field(alias="issueKeys")


class PushQueueMessagePayload(BaseMessagePayload):
    repository: Dict[str, Any]
    shas: List[PushCommit] = []


class DeploymentMessagePayload(BaseMessagePayload):
    # Deployment document, already in the shape Jira's deployments API accepts
    jira_payload: Dict[str, Any] = Field(alias="jiraPayload")


# =============================================================================
# Consumer-side types
# =============================================================================


@dataclass(frozen=True)
class QueueSettings:
    queue_name: str
    queue_url: str
    queue_region: str
    timeout_sec: float
    max_attempts: int
    long_polling_interval_sec: Optional[int] = None


@dataclass
class ListenerContext:
    """State of one receive loop. Several may be alive during a restart."""

    log: ContextLogger
    stopped: bool = False
    listener_running: bool = True


@dataclass
class SQSMessageContext:
    """Everything a handler gets for one delivery of a message"""

    message: Dict[str, Any]
    payload: Dict[str, Any]
    log: ContextLogger
    receive_count: int
    last_attempt: bool


@dataclass
class ErrorHandlingResult:
    is_failure: bool
    retryable: bool = False
    retry_delay_sec: Optional[float] = None
    # Delete the message on its last attempt instead of letting it go to the DLQ
    skip_dlq: bool = False


MessageHandler = Callable[[SQSMessageContext], Awaitable[None]]
ErrorHandler = Callable[[Exception, SQSMessageContext], Awaitable[ErrorHandlingResult]]

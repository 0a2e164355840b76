"""Application configuration"""

from typing import Any, Dict

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./jira_sync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Logging
    log_level: str = "INFO"

    # SQS
    # A queue without a URL is not started.
    aws_region: str = "us-west-1"
    sqs_endpoint_url: str | None = None
    sqs_backfill_queue_url: str | None = None
    sqs_backfill_queue_region: str | None = None
    sqs_backfill_timeout_sec: int = 10 * 60
    sqs_backfill_max_attempts: int = 3
    sqs_push_queue_url: str | None = None
    sqs_push_queue_region: str | None = None
    sqs_push_timeout_sec: int = 60
    sqs_push_max_attempts: int = 5
    sqs_deployment_queue_url: str | None = None
    sqs_deployment_queue_region: str | None = None
    sqs_deployment_timeout_sec: int = 60
    sqs_deployment_max_attempts: int = 5
    sqs_long_polling_interval_sec: int = 4

    # GitHub cloud app
    github_app_id: int = 0
    github_client_id: str = ""
    github_base_url: str = "https://github.com"
    github_api_url: str = "https://api.github.com"
    # Token used by the default installation token provider. Real installations
    # exchange the app JWT for a token; that flow lives outside this service.
    github_installation_token: str | None = None
    github_request_timeout_sec: int = 30

    # Jira
    jira_token: str | None = None
    jira_request_timeout_sec: int = 30

    # Feature flag values, optionally overridden per Jira host.
    #
    # Example: FLAG_OVERRIDES='{"log-level": {"https://acme.atlassian.net": "debug"}}'
    flag_overrides: Dict[str, Dict[str, Any]] = {}
    remove_stale_messages: bool = True
    preemptive_rate_limit_threshold: int = 100
    backfill_page_size: int = 20
    # Lookback windows in milliseconds; -1 or unset means no cutoff.
    sync_main_commit_time_limit: int | None = None
    sync_branch_commit_time_limit: int | None = None

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()

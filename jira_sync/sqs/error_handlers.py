"""Classification of message handler failures into retry decisions.

Some errors from Jira and GitHub don't mean the webhook failed: the Jira
site is gone (404), the GitHub app was uninstalled (401), and so on. Such
messages are discarded silently.
"""

import time
from typing import Optional

from jira_sync.clients.errors import GitHubClientError, GitHubRateLimitingError, JiraClientError
from jira_sync.metrics import emit_webhook_failed_metrics
from jira_sync.sqs.types import ErrorHandler, ErrorHandlingResult, SQSMessageContext

UNRETRYABLE_STATUS_CODES = (401, 403, 404)

BASE_RATE_LIMITING_DELAY_BUFFER_SEC = 60
RATE_LIMITING_BUFFER_STEP = 10
EXPONENTIAL_BACKOFF_BASE_SEC = 60
EXPONENTIAL_BACKOFF_MULTIPLIER = 3
ONE_HOUR_IN_SECONDS = 3600


async def handle_unknown_error(error: Exception, context: SQSMessageContext) -> ErrorHandlingResult:
    delay_sec = EXPONENTIAL_BACKOFF_BASE_SEC * EXPONENTIAL_BACKOFF_MULTIPLIER ** context.receive_count
    context.log.warning(f"Unknown error: retrying with exponential backoff in {delay_sec}s: {error!r}")
    return ErrorHandlingResult(is_failure=True, retryable=True, retry_delay_sec=delay_sec)


def maybe_handle_non_failure_case(error: Exception, context: SQSMessageContext) -> Optional[ErrorHandlingResult]:
    if isinstance(error, JiraClientError) and error.status in UNRETRYABLE_STATUS_CODES:
        context.log.warning(f"Received {error.status} from Jira. Unretryable. Discarding the message")
        return ErrorHandlingResult(is_failure=False, retryable=False)
    return None


def maybe_handle_rate_limiting_error(error: Exception, context: SQSMessageContext) -> Optional[ErrorHandlingResult]:
    if not isinstance(error, GitHubRateLimitingError):
        return None

    context.log.warning(f"Rate limiting error, retrying: {error}")
    # Messages retried more often become visible a bit sooner than fresh ones,
    # e.g. receive count 5 is replayed 50 seconds ahead of receive count 1
    buffer = max(
        RATE_LIMITING_BUFFER_STEP,
        BASE_RATE_LIMITING_DELAY_BUFFER_SEC - context.receive_count * RATE_LIMITING_BUFFER_STEP,
    )
    rate_limit_reset = error.rate_limit_reset + buffer - time.time()
    # The quota resets hourly; spread retried bursts over several resets
    retry_delay_sec = rate_limit_reset + ONE_HOUR_IN_SECONDS * (context.receive_count - 1)
    return ErrorHandlingResult(is_failure=True, retryable=True, retry_delay_sec=retry_delay_sec)


def maybe_handle_non_retryable_response_code(
    error: Exception, context: SQSMessageContext
) -> Optional[ErrorHandlingResult]:
    if isinstance(error, GitHubClientError) and error.status in UNRETRYABLE_STATUS_CODES:
        context.log.warning(f"Received error with {error.status} status. Unretryable. Discarding the message")
        return ErrorHandlingResult(is_failure=False, retryable=False)
    return None


async def jira_and_github_errors_handler(error: Exception, context: SQSMessageContext) -> ErrorHandlingResult:
    context.log.warning(f"Handling Jira or GitHub error: {error!r}")

    result = (
        maybe_handle_non_failure_case(error, context)
        or maybe_handle_rate_limiting_error(error, context)
        or maybe_handle_non_retryable_response_code(error, context)
    )
    if result is not None:
        return result

    return await handle_unknown_error(error, context)


def webhook_metric_wrapper(delegate: ErrorHandler, webhook_name: str) -> ErrorHandler:
    """Emit the failed webhook metric once the message won't be retried anymore"""

    async def handler(error: Exception, context: SQSMessageContext) -> ErrorHandlingResult:
        result = await delegate(error, context)

        if result.is_failure and (not result.retryable or context.last_attempt):
            context.log.error(f"{webhook_name} webhook processing failed and won't be retried anymore: {error!r}")
            emit_webhook_failed_metrics(webhook_name)

        return result

    return handler

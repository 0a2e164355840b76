"""Preemptive GitHub rate limit check for queue messages"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from jira_sync.clients.github_client import create_installation_client
from jira_sync.flags import NumberFlags, number_flag
from jira_sync.logger import ContextLogger
from jira_sync.sqs.types import SQSMessageContext

# Queues the preemptive rate limiting applies to
TARGETED_QUEUES = ("backfill",)
DEFAULT_PREEMPTIVE_RATE_LIMIT_DELAY_IN_SECONDS = 30 * 60


@dataclass
class RateLimitCheckResult:
    is_exceed_threshold: bool
    reset_time_in_seconds: Optional[float] = None


def _used_percent(bucket: Dict[str, Any]) -> float:
    limit = bucket["limit"]
    return (limit - bucket["remaining"]) / limit * 100


def _get_rate_limit_status(context: SQSMessageContext) -> Dict[str, Any]:
    payload = context.payload
    client = create_installation_client(payload.get("installationId"), payload.get("gitHubAppConfig"))
    return client.get_rate_limit()


def get_rate_reset_time(rate_limit: Dict[str, Any], log: ContextLogger) -> float:
    """Seconds until the later of the core and graphql quotas resets."""
    resources = rate_limit.get("resources") or {}
    core_reset = (resources.get("core") or {}).get("reset") or 0
    graphql_reset = (resources.get("graphql") or {}).get("reset") or 0
    # The furthest reset, so the other quota isn't exhausted right away
    time_to_reset = max(core_reset, graphql_reset) - time.time()
    final_time_to_reset = DEFAULT_PREEMPTIVE_RATE_LIMIT_DELAY_IN_SECONDS if time_to_reset <= 0 else time_to_reset

    log.info(
        f"Preemptive rate limit reset time: {final_time_to_reset:.0f}s "
        f"(computed {time_to_reset:.0f}s, core reset {core_reset}, graphql reset {graphql_reset})"
    )
    return final_time_to_reset


async def preemptive_rate_limit_check(context: SQSMessageContext, sqs_queue) -> RateLimitCheckResult:
    """Check whether the installation quota is used beyond the configured threshold.

    Applies only to ``TARGETED_QUEUES``. A failure to fetch the quota counts
    as "not exceeded".
    """
    if sqs_queue.queue_name not in TARGETED_QUEUES:
        return RateLimitCheckResult(is_exceed_threshold=False)

    jira_host = context.payload.get("jiraHost")
    threshold = number_flag(NumberFlags.PREEMPTIVE_RATE_LIMIT_THRESHOLD, 100, jira_host)

    try:
        rate_limit = await asyncio.to_thread(_get_rate_limit_status, context)
        resources = rate_limit["resources"]
        used_percent_core = _used_percent(resources["core"])
        used_percent_graphql = _used_percent(resources["graphql"])
        if used_percent_core >= threshold or used_percent_graphql >= threshold:
            return RateLimitCheckResult(
                is_exceed_threshold=True,
                reset_time_in_seconds=get_rate_reset_time(rate_limit, context.log),
            )
    except Exception as e:
        app_id = (context.payload.get("gitHubAppConfig") or {}).get("gitHubAppId")
        context.log.error(f"Failed to fetch Rate Limit: {e!r}", fields={"github_server_app_id": app_id})

    return RateLimitCheckResult(is_exceed_threshold=False)

"""Deployment status processing through the deployment queue"""

import asyncio

from jira_sync.clients.jira_client import get_jira_client
from jira_sync.logger import ContextLogger
from jira_sync.models import Subscription
from jira_sync.models.base import SessionLocal
from jira_sync.sqs.types import DeploymentMessagePayload, SQSMessageContext


def handle_deployment(payload: DeploymentMessagePayload, log: ContextLogger) -> None:
    app_id = payload.github_app_config.github_app_id if payload.github_app_config else None
    db = SessionLocal()
    try:
        subscription = Subscription.get_single_installation(db, payload.jira_host, payload.installation_id, app_id)
    finally:
        db.close()
    if subscription is None:
        log.info("No subscription was found, stop processing the deployment")
        return

    deployments = payload.jira_payload.get("deployments") or []
    if not deployments:
        log.info("Deployment carries no issue keys, nothing to send")
        return

    log.info(f"Sending {len(deployments)} deployments to Jira")
    get_jira_client(payload.jira_host).submit_deployments(payload.jira_payload)


async def deployment_queue_message_handler(context: SQSMessageContext) -> None:
    payload = DeploymentMessagePayload.model_validate(context.payload)
    context.log.info("Handling deployment message from the SQS queue")
    await asyncio.to_thread(handle_deployment, payload, context.log)

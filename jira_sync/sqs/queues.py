"""The service's SQS queues"""

import logging
from typing import List, Optional

from jira_sync.config import settings
from jira_sync.sqs.deployment import deployment_queue_message_handler
from jira_sync.sqs.error_handlers import jira_and_github_errors_handler, webhook_metric_wrapper
from jira_sync.sqs.push import push_queue_message_handler
from jira_sync.sqs.queue import SqsQueue
from jira_sync.sqs.types import QueueSettings
from jira_sync.sync.installation import BackfillProcessor

logger = logging.getLogger(__name__)


class SqsQueues:
    """Backfill, push and deployment queues built from settings.

    A queue without a configured URL is left as None and never started.
    """

    def __init__(self, sqs_client=None):
        self.backfill_processor = BackfillProcessor()

        self.backfill: Optional[SqsQueue] = self._create_queue(
            "backfill",
            settings.sqs_backfill_queue_url,
            settings.sqs_backfill_queue_region,
            settings.sqs_backfill_timeout_sec,
            settings.sqs_backfill_max_attempts,
            self.backfill_processor,
            self.backfill_processor.handle_error,
            sqs_client,
        )
        if self.backfill is not None:
            self.backfill_processor.send = self.backfill.send_message

        self.push: Optional[SqsQueue] = self._create_queue(
            "push",
            settings.sqs_push_queue_url,
            settings.sqs_push_queue_region,
            settings.sqs_push_timeout_sec,
            settings.sqs_push_max_attempts,
            push_queue_message_handler,
            webhook_metric_wrapper(jira_and_github_errors_handler, "push"),
            sqs_client,
        )
        self.deployment: Optional[SqsQueue] = self._create_queue(
            "deployment",
            settings.sqs_deployment_queue_url,
            settings.sqs_deployment_queue_region,
            settings.sqs_deployment_timeout_sec,
            settings.sqs_deployment_max_attempts,
            deployment_queue_message_handler,
            webhook_metric_wrapper(jira_and_github_errors_handler, "deployment_status"),
            sqs_client,
        )

    @staticmethod
    def _create_queue(
        name, queue_url, queue_region, timeout_sec, max_attempts, message_handler, error_handler, sqs_client
    ) -> Optional[SqsQueue]:
        if not queue_url:
            logger.info(f"No URL configured for the {name} queue, not creating it")
            return None
        return SqsQueue(
            QueueSettings(
                queue_name=name,
                queue_url=queue_url,
                queue_region=queue_region or settings.aws_region,
                timeout_sec=timeout_sec,
                max_attempts=max_attempts,
                long_polling_interval_sec=settings.sqs_long_polling_interval_sec,
            ),
            message_handler,
            error_handler,
            sqs_client,
        )

    def all(self) -> List[SqsQueue]:
        return [queue for queue in (self.backfill, self.push, self.deployment) if queue is not None]

    def start(self) -> None:
        """Start all configured queues. Must be called with a running event loop."""
        for queue in self.all():
            queue.start()
        logger.info(f"Started {len(self.all())} queue listeners")

    async def stop(self) -> None:
        for queue in self.all():
            await queue.stop()
        logger.info("All queue listeners stopped")


sqs_queues = SqsQueues()

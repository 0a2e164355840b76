"""SQS queue client: sending, and a single-flight listener with retries"""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Dict, Optional, Union

import boto3
from pydantic import BaseModel

from jira_sync import metrics
from jira_sync.config import settings
from jira_sync.flags import BooleanFlags, StringFlags, bool_flag, string_flag
from jira_sync.logger import ContextLogger, to_log_level
from jira_sync.sqs.rate_limit import preemptive_rate_limit_check
from jira_sync.sqs.types import (
    ErrorHandler,
    ErrorHandlingResult,
    ListenerContext,
    MessageHandler,
    QueueSettings,
    SQSMessageContext,
    SqsTimeoutError,
)

logger = logging.getLogger(__name__)

# https://docs.aws.amazon.com/AWSSimpleQueueService/latest/SQSDeveloperGuide/sqs-delay-queues.html
MAX_MESSAGE_DELAY_SEC = 15 * 60
# https://docs.aws.amazon.com/AWSSimpleQueueService/latest/SQSDeveloperGuide/sqs-visibility-timeout.html
MAX_MESSAGE_VISIBILITY_TIMEOUT_SEC = 12 * 60 * 60 - 1
DEFAULT_LONG_POLLING_INTERVAL = 4
# Room for error handling after a timeout, before the message becomes visible again
EXTRA_VISIBILITY_TIMEOUT_DELAY = 2
ONE_DAY_MILLI = 24 * 60 * 60 * 1000

STOP_POLL_INTERVAL_SEC = 0.01
STOP_TIMEOUT_SEC = 60

# Queues whose messages are dropped once older than a day
STALE_MESSAGE_QUEUES = ("deployment",)

unsafe_logger = logging.getLogger("jira_sync.sqs.error_handler_unsafe")
unsafe_logger.setLevel(logging.WARNING)


class SqsQueue:
    """Client for a single SQS queue.

    Sends messages, and listens to the queue processing one message at a
    time. A failed delivery stays on the queue with an adjusted visibility
    timeout, so retries are driven by SQS redelivery and its receive count.
    """

    def __init__(
        self,
        queue_settings: QueueSettings,
        message_handler: MessageHandler,
        error_handler: ErrorHandler,
        sqs_client=None,
    ):
        self.queue_url = queue_settings.queue_url
        self.queue_name = queue_settings.queue_name
        self.queue_region = queue_settings.queue_region
        self.long_polling_interval_sec = (
            queue_settings.long_polling_interval_sec
            if queue_settings.long_polling_interval_sec is not None
            else DEFAULT_LONG_POLLING_INTERVAL
        )
        self.timeout_sec = queue_settings.timeout_sec
        self.max_attempts = queue_settings.max_attempts
        self.message_handler = message_handler
        self.error_handler = error_handler
        self.sqs = sqs_client or boto3.client(
            "sqs", region_name=self.queue_region, endpoint_url=settings.sqs_endpoint_url
        )
        self.logger = logging.getLogger(f"jira_sync.sqs.{self.queue_name}")
        self.log = ContextLogger(self.logger, {"queue": self.queue_name})

        # Context of the currently active listener, or the last active one if the queue stopped
        self.listener_context: Optional[ListenerContext] = None
        self._listener_tasks = set()

    async def _call(self, method: str, **params) -> Dict[str, Any]:
        # boto3 is blocking; keep the event loop free while SQS answers
        return await asyncio.to_thread(getattr(self.sqs, method), **params)

    async def send_message(
        self,
        payload: Union[BaseModel, Dict[str, Any]],
        delay_sec: float = 0,
        log: Optional[ContextLogger] = None,
    ) -> Dict[str, Any]:
        """Send message to the queue"""
        log = log or self.log
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(by_alias=True, exclude_none=True, mode="json")

        if delay_sec >= MAX_MESSAGE_DELAY_SEC:
            log.warning(
                f"Message delay {delay_sec} sec is above the SQS maximum, reducing it to {MAX_MESSAGE_DELAY_SEC - 1} sec"
            )
            delay_sec = MAX_MESSAGE_DELAY_SEC - 1
        delay_sec = max(0, int(delay_sec))

        result = await self._call(
            "send_message",
            QueueUrl=self.queue_url,
            MessageBody=json.dumps(payload),
            DelaySeconds=delay_sec,
        )
        log.info(f"Successfully added message to sqs queue messageId: {result.get('MessageId')}", fields={"delay_seconds": delay_sec})
        metrics.sqs_sent.labels(queue=self.queue_name).inc()
        return result

    def start(self) -> None:
        """Start listening to the queue. Must be called with a running event loop."""
        # The previous listener may be stopped but still finishing its last message;
        # that's fine, the new listener gets its own context.
        if self.listener_context is not None and not self.listener_context.stopped:
            self.log.warning("Queue is already running")
            return

        context = ListenerContext(log=self.log.child(sqs_listener_id=str(uuid.uuid4())))
        self.listener_context = context
        context.log.info(
            f"Starting the queue (url={self.queue_url}, region={self.queue_region}, "
            f"long_polling_interval={self.long_polling_interval_sec})"
        )
        task = asyncio.get_running_loop().create_task(self._listen(context))
        self._listener_tasks.add(task)
        task.add_done_callback(self._listener_tasks.discard)

    async def stop(self) -> None:
        """Stop reading messages and wait for the in-flight message to finish."""
        context = self.listener_context
        if context is None or context.stopped:
            self.log.warning("Queue is already stopped")
            return
        context.log.info("Stopping the queue")
        context.stopped = True
        await self._wait_until_listener_stopped(context)

    async def _wait_until_listener_stopped(self, context: ListenerContext) -> None:
        start = time.monotonic()
        while context.listener_running:
            if time.monotonic() - start > STOP_TIMEOUT_SEC:
                raise TimeoutError("Listener didn't stop in 1 minute")
            await asyncio.sleep(STOP_POLL_INTERVAL_SEC)
        context.log.info("Awaited listener stop")

    async def purge_queue(self) -> None:
        """Remove all messages from the queue"""
        await self._call("purge_queue", QueueUrl=self.queue_url)

    async def get_message_count(self) -> int:
        response = await self._call(
            "get_queue_attributes", QueueUrl=self.queue_url, AttributeNames=["ApproximateNumberOfMessages"]
        )
        return int((response.get("Attributes") or {}).get("ApproximateNumberOfMessages") or 0)

    async def _listen(self, context: ListenerContext) -> None:
        try:
            while not context.stopped:
                try:
                    result = await self._call(
                        "receive_message",
                        QueueUrl=self.queue_url,
                        MaxNumberOfMessages=1,
                        WaitTimeSeconds=self.long_polling_interval_sec,
                        AttributeNames=["ApproximateReceiveCount"],
                    )
                    await self._handle_sqs_response(result, context)
                except Exception as e:
                    context.log.error(f"Error receiving message from SQS queue: {e}")
                    # Back off before the next receive
                    await asyncio.sleep(self.long_polling_interval_sec)
        finally:
            context.listener_running = False
            context.log.info("Queue has been stopped. Not processing further messages.")

    async def _handle_sqs_response(self, data: Dict[str, Any], context: ListenerContext) -> None:
        messages = data.get("Messages") or []
        if not messages:
            context.log.debug("Nothing to process")
            return

        metrics.sqs_received.labels(queue=self.queue_name).inc(len(messages))
        for message in messages:
            await self._execute_message(message, context)

    async def _delete_message(self, context: SQSMessageContext) -> None:
        receipt_handle = context.message.get("ReceiptHandle")
        if not receipt_handle:
            context.log.error("Unable to delete message, ReceiptHandle parameter is missing")
            return

        try:
            await self._call("delete_message", QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
            metrics.sqs_deleted.labels(queue=self.queue_name).inc()
            context.log.debug("Successfully deleted message from queue")
        except Exception as e:
            context.log.warning(f"Error deleting message from the queue: {e}")

    async def delete_stale_messages(self, message: Dict[str, Any], context: SQSMessageContext) -> bool:
        """Delete the message if it sits on a stale-prunable queue for more than a day."""
        if not bool_flag(BooleanFlags.REMOVE_STALE_MESSAGES, context.payload.get("jiraHost")):
            return False
        if not message.get("Body") or self.queue_name not in STALE_MESSAGE_QUEUES:
            return False

        webhook_received = context.payload.get("webhookReceived")
        if webhook_received is None:
            return False

        if time.time() * 1000 - float(webhook_received) > ONE_DAY_MILLI:
            await self._delete_message(context)
            context.log.warning(
                f"Deleted stale message from {self.queue_name} queue",
                fields={"deleted_message_id": message.get("MessageId")},
            )
            return True
        return False

    def _create_message_context(self, message: Dict[str, Any], listener_context: ListenerContext) -> SQSMessageContext:
        body = message.get("Body")
        payload = json.loads(body) if body else {}
        jira_host = payload.get("jiraHost")

        # Per Jira host log level, shared by all listeners of this queue
        self.logger.setLevel(to_log_level(string_flag(StringFlags.LOG_LEVEL, settings.log_level, jira_host)))

        receive_count = int((message.get("Attributes") or {}).get("ApproximateReceiveCount") or 1)
        return SQSMessageContext(
            message=message,
            payload=payload,
            log=listener_context.log.child(
                message_id=message.get("MessageId"),
                execution_id=str(uuid.uuid4()),
                jira_host=jira_host,
                installation_id=payload.get("installationId"),
                github_app_id=(payload.get("gitHubAppConfig") or {}).get("gitHubAppId"),
                webhook_id=payload.get("webhookId"),
            ),
            receive_count=receive_count,
            last_attempt=receive_count >= self.max_attempts,
        )

    async def _execute_message(self, message: Dict[str, Any], listener_context: ListenerContext) -> None:
        context = self._create_message_context(message, listener_context)
        context.log.info(f"SQS message received. Receive count: {context.receive_count}")

        try:
            processing_start = time.monotonic()
            if await self.delete_stale_messages(message, context):
                return

            rate_limit_check = await preemptive_rate_limit_check(context, self)
            if rate_limit_check.is_exceed_threshold:
                # Resend a copy delayed until the quota resets
                result = await self.send_message(
                    {**context.payload, "rateLimited": True},
                    rate_limit_check.reset_time_in_seconds or 0,
                    context.log,
                )
                await self._delete_message(context)
                context.log.warning(
                    "Preemptive rate limit threshold exceeded, rescheduled new one and deleted the origin msg",
                    fields={"new_message_id": result.get("MessageId")},
                )
                return

            await self.change_visibility_timeout(
                message, self.timeout_sec + EXTRA_VISIBILITY_TIMEOUT_DELAY, context.log
            )
            await self._run_handler_with_timeout(context)

            duration_ms = (time.monotonic() - processing_start) * 1000
            metrics.record_processed(self.queue_name, duration_ms)
            await self._delete_message(context)
        except Exception as err:
            await self._handle_sqs_message_execution_error(err, context)

    async def _run_handler_with_timeout(self, context: SQSMessageContext) -> None:
        """Wait for the handler up to ``timeout_sec``.

        On timeout the handler keeps running in the background; only the wait
        is abandoned.
        """
        task = asyncio.ensure_future(self.message_handler(context))
        done, _ = await asyncio.wait({task}, timeout=self.timeout_sec)
        if task not in done:
            task.add_done_callback(_log_abandoned_handler(context.log))
            raise SqsTimeoutError(self.timeout_sec)
        task.result()

    async def _handle_sqs_message_execution_error(self, err: Exception, context: SQSMessageContext) -> None:
        try:
            unsafe_logger.warning(
                f"Failed message {context.message.get('MessageId')} on {self.queue_name}: {err!r} "
                f"payload={context.payload}"
            )
            result = await self.error_handler(err, context)

            if result.is_failure:
                context.log.error(f"Error while executing SQS message: {err!r}")
                metrics.sqs_failed.labels(queue=self.queue_name).inc()
            else:
                context.log.warning(
                    f"Expected exception while executing SQS message. Not an error, deleting the message. {err!r}"
                )

            if not result.is_failure:
                context.log.info("Deleting the message because the error is not a failure")
                await self._delete_message(context)
            elif not result.retryable:
                context.log.warning("Deleting the message because the error is not retryable")
                await self._delete_message(context)
            elif result.skip_dlq and self._is_message_reached_retry_limit(context):
                context.log.warning("Deleting the message because it has reached the maximum amount of retries")
                await self._delete_message(context)
            elif context.last_attempt:
                # No further retry: once the current lease expires SQS moves the message to the DLQ
                context.log.warning("Message reached the maximum amount of retries, leaving it for the DLQ")
            else:
                unsafe_logger.error(
                    f"SQS message visibility timeout changed: {result} for {context.message.get('MessageId')}"
                )
                await self._change_visibility_timeout_if_needed(result, context.message, context.log)
        except Exception as error_handling_exception:
            unsafe_logger.error(
                f"Error while performing error handling on SQS message: {error_handling_exception!r} "
                f"(original error: {err!r}, payload={context.payload})"
            )
            context.log.error(
                f"Error while performing error handling on SQS message: {error_handling_exception!r} "
                f"(original error: {err!r})"
            )

    async def _change_visibility_timeout_if_needed(
        self, result: ErrorHandlingResult, message: Dict[str, Any], log: ContextLogger
    ) -> None:
        # Zero seconds is a valid delay
        if result.retry_delay_sec is not None:
            log.info(f"Delaying the retry for {result.retry_delay_sec} seconds")
            await self.change_visibility_timeout(message, result.retry_delay_sec, log)

    def _is_message_reached_retry_limit(self, context: SQSMessageContext) -> bool:
        return context.receive_count >= self.max_attempts

    async def change_visibility_timeout(
        self, message: Dict[str, Any], timeout_sec: float, log: Optional[ContextLogger] = None
    ) -> None:
        log = log or self.log
        receipt_handle = message.get("ReceiptHandle")
        if not receipt_handle:
            log.error(f"No ReceiptHandle in message with ID = {message.get('MessageId')}")
            return

        if timeout_sec < 0:
            log.error("Timeout needs to be a positive number.")
            return

        if timeout_sec >= MAX_MESSAGE_VISIBILITY_TIMEOUT_SEC:
            log.warning(
                f"Attempt to set visibility timeout greater than allowed. Timeout value: {timeout_sec} sec. "
                f"Will be reset to max value of {MAX_MESSAGE_VISIBILITY_TIMEOUT_SEC} sec"
            )
            timeout_sec = MAX_MESSAGE_VISIBILITY_TIMEOUT_SEC

        try:
            await self._call(
                "change_message_visibility",
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt_handle,
                VisibilityTimeout=int(round(timeout_sec)),
            )
        except Exception as e:
            log.error(f"Message visibility timeout change failed: {e}")


def _log_abandoned_handler(log: ContextLogger):
    def callback(task: "asyncio.Task") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning(f"Timed out message handler finished with an error: {exc!r}")
        else:
            log.info("Timed out message handler finished")

    return callback

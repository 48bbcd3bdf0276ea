"""
SQS-backed dead-letter surface for checkout events.

Each message body is a JSON DeadLetter: the event in its original form, the
reason it was given up on and how many deliveries were attempted. Operators
inspect the queue and replay entries once the root cause is fixed.
"""

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional

import boto3
from aws_lambda_powertools.metrics import MetricUnit
from pydantic import ValidationError

from swn_ordering.events.event_bus import EventPublishError
from swn_ordering.events.event_publisher import EventBridgeCheckoutPublisher
from swn_ordering.events.retry_policy import DeadLetter
from swn_ordering.handlers.utils.observability import logger, metrics, tracer
from swn_ordering.models.checkout import CheckoutEvent


@dataclass
class ReceivedDeadLetter:
    """A dead letter read from the queue, with the handle needed to delete it."""

    message_id: str
    receipt_handle: str
    dead_letter: DeadLetter


@dataclass
class ReplayResult:
    """Result of a dead-letter replay run."""

    replayed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class SqsDeadLetterQueue:
    """Dead-letter queue for checkout events that exhausted or skipped their retry budget."""

    def __init__(self, queue_url: str, sqs_client: Optional[Any] = None):
        self.queue_url = queue_url
        self.sqs = sqs_client or boto3.client('sqs')

    @tracer.capture_method
    def send(self, dead_letter: DeadLetter) -> str:
        """
        Put a dead letter on the queue.

        Returns:
            SQS message id

        Raises:
            ClientError: If SQS refuses the message; the caller must not acknowledge the event
        """
        response = self.sqs.send_message(
            QueueUrl=self.queue_url,
            MessageBody=dead_letter.model_dump_json(),
            MessageAttributes={
                'reason': {'DataType': 'String', 'StringValue': dead_letter.reason[:1024]},
                'error_code': {'DataType': 'String', 'StringValue': dead_letter.error_code},
                'attempts': {'DataType': 'Number', 'StringValue': str(dead_letter.attempts)},
            },
        )

        metrics.add_metric(name="CheckoutDeadLettered", unit=MetricUnit.Count, value=1)
        logger.error("Checkout event dead-lettered", extra={
            "event_id": dead_letter.event_id,
            "attempts": dead_letter.attempts,
            "error_code": dead_letter.error_code,
            "reason": dead_letter.reason,
            "message_id": response['MessageId'],
        })
        return response['MessageId']

    @tracer.capture_method
    def receive(self, max_messages: int = 10, wait_time_seconds: int = 0) -> List[ReceivedDeadLetter]:
        """Read up to max_messages dead letters without removing them."""
        response = self.sqs.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=min(max_messages, 10),
            WaitTimeSeconds=wait_time_seconds,
        )

        received = []
        for message in response.get('Messages', []):
            try:
                dead_letter = DeadLetter.model_validate_json(message['Body'])
            except ValidationError as e:
                logger.warning("Skipping unreadable dead-letter message", extra={
                    "message_id": message['MessageId'],
                    "error": str(e),
                })
                continue
            received.append(ReceivedDeadLetter(
                message_id=message['MessageId'],
                receipt_handle=message['ReceiptHandle'],
                dead_letter=dead_letter,
            ))
        return received

    def delete(self, receipt_handle: str) -> None:
        self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)

    @tracer.capture_method
    def replay(self, publisher: EventBridgeCheckoutPublisher, max_messages: int = 10) -> ReplayResult:
        """
        Republish dead-lettered checkouts and remove the ones EventBridge accepted.

        Entries whose payload cannot be parsed as a checkout stay on the queue.
        """
        result = ReplayResult()

        for received in self.receive(max_messages=max_messages):
            dead_letter = received.dead_letter
            try:
                event = self._to_event(dead_letter)
                publisher.publish(event)
            except (ValueError, EventPublishError) as e:
                result.failed.append(dead_letter.event_id)
                result.errors.append(str(e))
                logger.warning("Dead letter replay failed", extra={
                    "event_id": dead_letter.event_id,
                    "error": str(e),
                })
                continue

            self.delete(received.receipt_handle)
            result.replayed.append(dead_letter.event_id)

        logger.info("Dead letter replay completed", extra={
            "replayed": len(result.replayed),
            "failed": len(result.failed),
        })
        return result

    @staticmethod
    def _to_event(dead_letter: DeadLetter) -> CheckoutEvent:
        payload = dead_letter.payload
        if isinstance(payload, str):
            return CheckoutEvent.from_message_body(
                payload, fallback_event_id=dead_letter.event_id, fallback_published_at=dead_letter.published_at
            )
        # Round-trip through JSON so prices come back as Decimal
        return CheckoutEvent.from_message_body(
            json.dumps(payload, default=str),
            fallback_event_id=dead_letter.event_id,
            fallback_published_at=dead_letter.published_at,
        )

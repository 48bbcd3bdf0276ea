"""
Checkout Consumer - Lambda function for the checkout queue.

EventBridge routes every CheckoutBasket event to an SQS queue; this handler
drains that queue in batches. Each record is acknowledged, redelivered by SQS
after a backoff, or moved to the dead-letter queue with its failure reason and
attempt count. A record is only acknowledged after it produced an order or
reached the dead-letter queue.
"""

import json
import math
from decimal import Decimal
from typing import Any, Dict, Optional

import boto3
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.batch import BatchProcessor, EventType, process_partial_response
from aws_lambda_powertools.utilities.data_classes.sqs_event import SQSRecord
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.exceptions import BotoCoreError, ClientError

from swn_ordering.dal import get_order_store
from swn_ordering.events.dead_letter import SqsDeadLetterQueue
from swn_ordering.events.retry_policy import DeadLetter, RetryPolicy
from swn_ordering.handlers.models.env_vars import OrderingEnvVars, get_handler_env_vars
from swn_ordering.handlers.utils.errors import ErrorCategory, ProcessingError, TransientProcessingError
from swn_ordering.handlers.utils.observability import logger, metrics, tracer
from swn_ordering.logic.order_processor import OrderProcessor
from swn_ordering.models.checkout import CheckoutEvent


def queue_url_from_arn(queue_arn: str) -> str:
    """Build an SQS queue URL from ``arn:aws:sqs:<region>:<account>:<name>``."""
    _, partition, _, region, account_id, name = queue_arn.split(':', 5)
    domain = 'amazonaws.com.cn' if partition == 'aws-cn' else 'amazonaws.com'
    return f'https://sqs.{region}.{domain}/{account_id}/{name}'


class CheckoutQueueConsumer:
    """Applies the retry and dead-letter rules to SQS checkout records."""

    def __init__(
        self,
        processor: OrderProcessor,
        dead_letter_queue: SqsDeadLetterQueue,
        retry_policy: Optional[RetryPolicy] = None,
        sqs_client: Optional[Any] = None,
        queue_url: Optional[str] = None,
        processing_timeout_seconds: Optional[int] = None,
    ):
        """
        Initialize the consumer.

        Args:
            processor: Order processor invoked for every parsed checkout
            dead_letter_queue: Destination for checkouts given up on
            retry_policy: Attempt budget and redelivery backoff
            sqs_client: SQS client used to delay redeliveries
            queue_url: Checkout queue URL; derived from each record's ARN when None
            processing_timeout_seconds: Invocation time a record needs before it is started
        """
        self.processor = processor
        self.dead_letter_queue = dead_letter_queue
        self.retry_policy = retry_policy or RetryPolicy()
        self.sqs = sqs_client or boto3.client('sqs')
        self.queue_url = queue_url
        self.processing_timeout_seconds = processing_timeout_seconds
        self._batch_processor = BatchProcessor(event_type=EventType.SQS, raise_on_entire_batch_failure=False)

    def process_batch(self, event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
        """
        Process an SQS batch.

        Returns:
            Partial batch response listing the records SQS must redeliver
        """
        return process_partial_response(
            event=event,
            record_handler=self.handle_record,
            processor=self._batch_processor,
            context=context,
        )

    def handle_record(self, record: SQSRecord, lambda_context: Optional[LambdaContext] = None) -> Optional[str]:
        """
        Handle one checkout record.

        Returns:
            Order id, or None when the record was dead-lettered

        Raises:
            Exception: Retryable or unclassified failure within budget; SQS will redeliver
        """
        # SQS reports the receive count as a string
        attempt = int(record.attributes.approximate_receive_count)

        try:
            event = CheckoutEvent.from_message_body(record.body, fallback_event_id=record.message_id)
        except ValueError as e:
            self._dead_letter(record, attempt, reason=f'Malformed checkout event: {e}', error_code='MALFORMED_EVENT')
            return None

        logger.append_keys(checkout_event_id=event.event_id, customer_id=event.customer_id)
        try:
            self._check_time_budget(lambda_context)
            return self.processor.handle(event)
        except ProcessingError as e:
            if not e.retryable or self.retry_policy.is_exhausted(attempt):
                self._dead_letter(record, attempt, reason=e.message, error_code=e.error_code, event=event)
                return None

            self._delay_redelivery(record, attempt)
            raise
        except Exception as e:
            # Unclassified failures are retried within the same budget so they cannot be lost
            logger.exception('Unexpected error processing checkout', extra={'message_id': record.message_id})
            if self.retry_policy.is_exhausted(attempt):
                self._dead_letter(
                    record, attempt, reason=f'{type(e).__name__}: {e}', error_code='UNEXPECTED_ERROR', event=event
                )
                return None

            self._delay_redelivery(record, attempt)
            raise
        finally:
            logger.remove_keys(['checkout_event_id', 'customer_id'])

    def _check_time_budget(self, lambda_context: Optional[LambdaContext]) -> None:
        """Refuse to start a record the invocation cannot finish; SQS redelivers it instead."""
        if lambda_context is None or not self.processing_timeout_seconds:
            return

        remaining_ms = lambda_context.get_remaining_time_in_millis()
        if remaining_ms < self.processing_timeout_seconds * 1000:
            raise TransientProcessingError(
                message=f'Only {remaining_ms}ms left in the invocation, record deferred',
                error_code='PROCESSING_TIMEOUT',
                category=ErrorCategory.TIMEOUT,
            )

    def _dead_letter(
        self,
        record: SQSRecord,
        attempt: int,
        reason: str,
        error_code: str,
        event: Optional[CheckoutEvent] = None,
    ) -> None:
        """Send the record to the dead-letter queue; a send failure propagates so the record is not acknowledged."""
        try:
            payload = json.loads(record.body, parse_float=Decimal)
        except ValueError:
            payload = record.body
        if not isinstance(payload, dict):
            payload = record.body

        self.dead_letter_queue.send(DeadLetter(
            event_id=event.event_id if event else record.message_id,
            payload=payload,
            reason=reason,
            error_code=error_code,
            attempts=attempt,
            published_at=event.published_at if event else None,
        ))

    def _delay_redelivery(self, record: SQSRecord, attempt: int) -> None:
        """Hold the message back for the policy backoff before SQS redelivers it."""
        delay = int(math.ceil(self.retry_policy.backoff_for(attempt)))
        queue_url = self.queue_url or queue_url_from_arn(record.event_source_arn)

        try:
            self.sqs.change_message_visibility(
                QueueUrl=queue_url,
                ReceiptHandle=record.receipt_handle,
                VisibilityTimeout=delay,
            )
        except (ClientError, BotoCoreError) as e:
            # The queue's own visibility timeout still applies
            logger.warning('Could not delay checkout redelivery', extra={
                'message_id': record.message_id,
                'error': str(e),
            })
            return

        metrics.add_metric(name='CheckoutRedeliveryScheduled', unit=MetricUnit.Count, value=1)
        logger.warning('Checkout processing failed, redelivery scheduled', extra={
            'message_id': record.message_id,
            'attempt': attempt,
            'backoff_seconds': delay,
        })


def build_checkout_consumer(
    settings: OrderingEnvVars,
    dynamodb_resource: Optional[Any] = None,
    sqs_client: Optional[Any] = None,
) -> CheckoutQueueConsumer:
    """Wire the consumer and its collaborators from validated settings."""
    sqs_client = sqs_client or boto3.client('sqs', region_name=settings.AWS_REGION)
    processor = OrderProcessor(
        order_store=get_order_store(settings, dynamodb_resource=dynamodb_resource),
        max_order_items=settings.MAX_ORDER_ITEMS,
    )
    return CheckoutQueueConsumer(
        processor=processor,
        dead_letter_queue=SqsDeadLetterQueue(settings.DEAD_LETTER_QUEUE_URL, sqs_client=sqs_client),
        retry_policy=settings.retry_policy(),
        sqs_client=sqs_client,
        queue_url=settings.CHECKOUT_QUEUE_URL,
        processing_timeout_seconds=settings.PROCESSING_TIMEOUT_SECONDS,
    )


# Built on the first invocation of a cold container and reused while it stays warm
_consumer: Optional[CheckoutQueueConsumer] = None


def get_checkout_consumer() -> CheckoutQueueConsumer:
    """Return the container's consumer, building it from the environment on first use."""
    global _consumer

    if _consumer is None:
        _consumer = build_checkout_consumer(get_handler_env_vars())

    return _consumer


@logger.inject_lambda_context
@metrics.log_metrics
@tracer.capture_lambda_handler(capture_response=False)
def lambda_handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function entry point for the checkout queue.

    Args:
        event: SQS batch event
        context: Lambda context object

    Returns:
        Partial batch response
    """
    return get_checkout_consumer().process_batch(event, context)

"""
EventBridge publisher for checkout events.

Producers hand checkout events to the SwnEventBus; an EventBridge rule routes
them to the checkout queue consumed by the ordering Lambda. A successful
publish only means EventBridge accepted the event.
"""

import json
import time
from typing import Any, Dict, Optional

import boto3
from aws_lambda_powertools.metrics import MetricUnit
from botocore.exceptions import BotoCoreError, ClientError

from swn_ordering.events.event_bus import Accepted, EventPublishError
from swn_ordering.handlers.models.env_vars import OrderingEnvVars
from swn_ordering.handlers.utils.observability import logger, metrics, tracer
from swn_ordering.models.checkout import CheckoutEvent

DEFAULT_EVENT_BUS_NAME = 'SwnEventBus'
DEFAULT_EVENT_SOURCE = 'com.swn.basket.checkoutbasket'
DEFAULT_DETAIL_TYPE = 'CheckoutBasket'

# Retrying these cannot succeed
NON_RETRYABLE_ERROR_CODES = frozenset({'ValidationException', 'InvalidParameterValue', 'AccessDeniedException'})


class EventBridgeCheckoutPublisher:
    """Publishes checkout events to EventBridge with retry and exponential backoff."""

    def __init__(
        self,
        event_bus_name: str = DEFAULT_EVENT_BUS_NAME,
        source: str = DEFAULT_EVENT_SOURCE,
        detail_type: str = DEFAULT_DETAIL_TYPE,
        events_client: Optional[Any] = None,
        region_name: Optional[str] = None,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        sleep=time.sleep,
    ):
        """
        Initialize EventBridge publisher.

        Args:
            event_bus_name: Name of the EventBridge bus
            source: Event source the checkout rule matches on
            detail_type: Detail type the checkout rule matches on
            events_client: Pre-built boto3 EventBridge client
            region_name: AWS region, when the client is built here
            max_retries: Maximum retry attempts after the first call
            retry_backoff: Initial backoff time in seconds
            sleep: Called between attempts
        """
        self.event_bus_name = event_bus_name
        self.source = source
        self.detail_type = detail_type
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._sleep = sleep

        if events_client is None:
            events_client = boto3.client('events', region_name=region_name) if region_name else boto3.client('events')
        self.eventbridge = events_client

        logger.info("Checkout publisher initialized", extra={
            "event_bus_name": event_bus_name,
            "source": source,
            "detail_type": detail_type,
            "max_retries": max_retries,
        })

    def to_entry(self, event: CheckoutEvent) -> Dict[str, Any]:
        """Convert to EventBridge PutEvents entry format."""
        return {
            'Source': self.source,
            'DetailType': self.detail_type,
            'Detail': json.dumps(event.to_detail()),
            'EventBusName': self.event_bus_name,
            'Time': event.published_at,
        }

    @tracer.capture_method
    def publish(self, event: CheckoutEvent) -> Accepted:
        """
        Publish a single checkout event.

        Args:
            event: Checkout event to publish

        Returns:
            Accepted carrying the EventBridge event id

        Raises:
            EventPublishError: If EventBridge did not accept the event
        """
        response = self._publish_with_retry(self.to_entry(event), event.event_id)

        entry_result = (response.get('Entries') or [{}])[0]
        if response.get('FailedEntryCount', 0) > 0 or 'ErrorCode' in entry_result:
            metrics.add_metric(name="CheckoutEventPublishFailed", unit=MetricUnit.Count, value=1)
            raise EventPublishError(
                f"EventBridge rejected checkout event: "
                f"{entry_result.get('ErrorCode', 'Unknown')} {entry_result.get('ErrorMessage', '')}".strip(),
                event_id=event.event_id,
            )

        metrics.add_metric(name="CheckoutEventPublished", unit=MetricUnit.Count, value=1)
        accepted = Accepted(event_id=entry_result.get('EventId', event.event_id))
        logger.info("Checkout event published", extra={
            "event_id": accepted.event_id,
            "customer_id": event.customer_id,
            "event_bus_name": self.event_bus_name,
        })
        return accepted

    def _publish_with_retry(self, entry: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """Publish the entry, retrying transport and service errors."""
        last_exception = None

        for attempt in range(self.max_retries + 1):
            try:
                response = self.eventbridge.put_events(Entries=[entry])
                if attempt > 0:
                    logger.info(f"Checkout event published on attempt {attempt + 1}")
                return response

            except (ClientError, BotoCoreError) as e:
                last_exception = e
                error_code = getattr(e, 'response', {}).get('Error', {}).get('Code', 'Unknown')

                logger.warning(
                    f"Checkout event publish attempt {attempt + 1} failed: {error_code}",
                    extra={"error": str(e), "attempt": attempt + 1, "event_id": event_id}
                )

                if error_code in NON_RETRYABLE_ERROR_CODES:
                    break

                if attempt < self.max_retries:
                    self._sleep(self.retry_backoff * (2 ** attempt))

        metrics.add_metric(name="CheckoutEventPublishFailed", unit=MetricUnit.Count, value=1)
        raise EventPublishError(
            f"Failed to publish checkout event {event_id}: {last_exception}",
            event_id=event_id,
            original_error=last_exception,
        )


def build_checkout_publisher(
    settings: OrderingEnvVars,
    events_client: Optional[Any] = None,
) -> EventBridgeCheckoutPublisher:
    """Build the publisher for the bus, source and detail type the checkout rule matches."""
    return EventBridgeCheckoutPublisher(
        event_bus_name=settings.EVENT_BUS_NAME,
        source=settings.EVENT_SOURCE,
        detail_type=settings.EVENT_DETAIL_TYPE,
        events_client=events_client,
        region_name=settings.AWS_REGION,
    )

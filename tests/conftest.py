"""
Pytest configuration and shared fixtures for the ordering core.

This module provides common test fixtures and configuration used across
unit and integration tests.
"""

import json
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import Mock

import boto3
import pytest
from moto import mock_aws

# Set before any Powertools object is created
os.environ.update({
    "AWS_DEFAULT_REGION": "us-east-1",
    "AWS_REGION": "us-east-1",
    "AWS_ACCESS_KEY_ID": "testing",
    "AWS_SECRET_ACCESS_KEY": "testing",
    "AWS_SECURITY_TOKEN": "testing",
    "AWS_SESSION_TOKEN": "testing",
    "ORDER_TABLE_NAME": "test-orders-table",
    "DEAD_LETTER_QUEUE_URL": "https://sqs.us-east-1.amazonaws.com/123456789012/checkout-dlq",
    "POWERTOOLS_SERVICE_NAME": "test-swn-ordering",
    "POWERTOOLS_METRICS_NAMESPACE": "TestSwnOrdering",
    "LOG_LEVEL": "DEBUG",
    "POWERTOOLS_TRACE_DISABLED": "true",  # Disable X-Ray in tests
})

from swn_ordering.dal.memory_handler import InMemoryOrderStore  # noqa: E402
from swn_ordering.logic.order_processor import OrderProcessor  # noqa: E402
from swn_ordering.models.checkout import BasketItem, CheckoutEvent  # noqa: E402

TABLE_NAME = "test-orders-table"
REGION = "us-east-1"

T1 = datetime(2024, 3, 1, 10, 0, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 3, 2, 15, 30, 0, tzinfo=timezone.utc)


# AWS fixtures
@pytest.fixture
def aws() -> Generator[None, None, None]:
    """Start moto for every AWS service touched by the test."""
    with mock_aws():
        yield


@pytest.fixture
def dynamodb_resource(aws):
    return boto3.resource("dynamodb", region_name=REGION)


@pytest.fixture
def dynamodb_table(dynamodb_resource):
    """Create a mock orders table keyed by (customer_id, order_date)."""
    table = dynamodb_resource.create_table(
        TableName=TABLE_NAME,
        KeySchema=[
            {"AttributeName": "customer_id", "KeyType": "HASH"},
            {"AttributeName": "order_date", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "customer_id", "AttributeType": "S"},
            {"AttributeName": "order_date", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    table.wait_until_exists()
    return table


@pytest.fixture
def sqs_client(aws):
    return boto3.client("sqs", region_name=REGION)


@pytest.fixture
def checkout_queue_url(sqs_client) -> str:
    return sqs_client.create_queue(QueueName="checkout-queue")["QueueUrl"]


@pytest.fixture
def dead_letter_queue_url(sqs_client) -> str:
    return sqs_client.create_queue(QueueName="checkout-dlq")["QueueUrl"]


@pytest.fixture
def events_client(aws):
    """EventBridge client with the SwnEventBus created."""
    client = boto3.client("events", region_name=REGION)
    client.create_event_bus(Name="SwnEventBus")
    return client


# Domain fixtures
@pytest.fixture
def basket_items() -> List[BasketItem]:
    """Two lines totalling 25.50."""
    return [
        BasketItem(product_id="p1", quantity=2, unit_price=Decimal("10.00")),
        BasketItem(product_id="p2", quantity=1, unit_price=Decimal("5.50")),
    ]


@pytest.fixture
def make_checkout_event(basket_items):
    """Factory for checkout events; each call gets a fresh event id."""

    def _make(
        customer_id: Optional[str] = "swn",
        items: Optional[List[BasketItem]] = None,
        checkout_timestamp: Optional[datetime] = T1,
        basket_last_modified: Optional[datetime] = None,
        **kwargs: Any,
    ) -> CheckoutEvent:
        return CheckoutEvent(
            customer_id=customer_id,
            items=tuple(basket_items if items is None else items),
            checkout_timestamp=checkout_timestamp,
            basket_last_modified=basket_last_modified,
            **kwargs,
        )

    return _make


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def processor(order_store) -> OrderProcessor:
    return OrderProcessor(order_store=order_store)


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


def eventbridge_envelope(event: CheckoutEvent, event_id: str = "eb-event-1") -> Dict[str, Any]:
    """EventBridge envelope as the checkout rule delivers it to SQS."""
    return {
        "version": "0",
        "id": event_id,
        "detail-type": "CheckoutBasket",
        "source": "com.swn.basket.checkoutbasket",
        "account": "123456789012",
        "time": "2024-03-01T10:00:05Z",
        "region": REGION,
        "resources": [],
        "detail": event.to_detail(),
    }


def sqs_record(
    body: str,
    message_id: str = "msg-1",
    receive_count: int = 1,
    receipt_handle: str = "receipt-1",
    queue_arn: str = "arn:aws:sqs:us-east-1:123456789012:checkout-queue",
) -> Dict[str, Any]:
    """A raw SQS record as found in a Lambda batch event."""
    return {
        "messageId": message_id,
        "receiptHandle": receipt_handle,
        "body": body,
        "attributes": {
            "ApproximateReceiveCount": str(receive_count),
            "SentTimestamp": "1709287205000",
            "SenderId": "AIDAEXAMPLE",
            "ApproximateFirstReceiveTimestamp": "1709287205001",
        },
        "messageAttributes": {},
        "md5OfBody": "",
        "eventSource": "aws:sqs",
        "eventSourceARN": queue_arn,
        "awsRegion": REGION,
    }


def envelope_body(event: CheckoutEvent, event_id: str = "eb-event-1") -> str:
    return json.dumps(eventbridge_envelope(event, event_id))


@pytest.fixture
def make_sqs_record():
    return sqs_record


@pytest.fixture
def make_envelope_body():
    return envelope_body


@pytest.fixture
def lambda_context():
    """Create a mock Lambda context for testing."""
    context = Mock()
    context.function_name = "checkout-consumer"
    context.function_version = "1"
    context.invoked_function_arn = "arn:aws:lambda:us-east-1:123456789012:function:checkout-consumer"
    context.memory_limit_in_mb = 512
    context.get_remaining_time_in_millis = Mock(return_value=300000)
    context.aws_request_id = "test-request-id-123"
    context.log_group_name = "/aws/lambda/checkout-consumer"
    context.log_stream_name = "2024/03/01/[$LATEST]test123"
    return context


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(autouse=True)
def reset_cold_start_consumer():
    """Drop the consumer cached by the Lambda entry point between tests."""
    from swn_ordering.handlers import checkout_consumer

    checkout_consumer._consumer = None
    yield
    checkout_consumer._consumer = None

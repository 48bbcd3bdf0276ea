"""
Environment variable models for type-safe configuration.

The ordering Lambda reads all of its settings from the environment once, at
cold start, and validates them before any event is consumed. Components never
read the environment themselves; they receive these values through their
constructors.
"""

from typing import Annotated, Optional

from aws_lambda_env_modeler import BaseModel, get_environment_variables
from pydantic import Field, model_validator

from swn_ordering.events.retry_policy import RetryPolicy


class OrderingEnvVars(BaseModel):
    """Environment variables for the checkout consumer."""

    # DynamoDB table holding orders, keyed by (customer_id, order_date)
    ORDER_TABLE_NAME: Annotated[str, Field(
        description='DynamoDB table name for order storage',
        min_length=1
    )]

    # Dead-letter surface for checkouts that exhausted their retry budget
    DEAD_LETTER_QUEUE_URL: Annotated[str, Field(
        description='SQS queue URL receiving dead-lettered checkout events',
        min_length=1
    )]

    # Derived from the record's event source ARN when unset
    CHECKOUT_QUEUE_URL: Annotated[Optional[str], Field(
        description='SQS queue URL the checkout events are consumed from'
    )] = None

    EVENT_BUS_NAME: Annotated[str, Field(
        description='EventBridge bus carrying checkout events',
        min_length=1
    )] = 'SwnEventBus'

    EVENT_SOURCE: Annotated[str, Field(
        description='EventBridge source of checkout events',
        min_length=1
    )] = 'com.swn.basket.checkoutbasket'

    EVENT_DETAIL_TYPE: Annotated[str, Field(
        description='EventBridge detail type of checkout events',
        min_length=1
    )] = 'CheckoutBasket'

    # Delivery attempts before an event is dead-lettered
    MAX_DELIVERY_ATTEMPTS: Annotated[int, Field(
        description='Maximum delivery attempts per checkout event',
        ge=1,
        le=100
    )] = 5

    RETRY_BACKOFF_BASE_SECONDS: Annotated[float, Field(
        description='Backoff before the second delivery attempt',
        ge=0
    )] = 2.0

    # SQS caps visibility timeouts at 12 hours
    RETRY_BACKOFF_MAX_SECONDS: Annotated[float, Field(
        description='Upper bound for the redelivery backoff',
        ge=0,
        le=43200
    )] = 300.0

    PROCESSING_TIMEOUT_SECONDS: Annotated[int, Field(
        description='Time budget for a single processing attempt',
        ge=1,
        le=900
    )] = 30

    MAX_ORDER_ITEMS: Annotated[int, Field(
        description='Maximum number of basket lines accepted in one order',
        ge=1,
        le=1000
    )] = 100

    # For local testing against DynamoDB Local
    DYNAMODB_ENDPOINT: Annotated[Optional[str], Field(
        description='DynamoDB endpoint override'
    )] = None

    AWS_REGION: Annotated[str, Field(
        description='AWS region for service deployment'
    )] = 'us-east-1'

    POWERTOOLS_SERVICE_NAME: Annotated[str, Field(
        description='Service name for AWS Powertools'
    )] = 'swn-ordering'

    POWERTOOLS_METRICS_NAMESPACE: Annotated[str, Field(
        description='Namespace for CloudWatch metrics'
    )] = 'SwnOrdering'

    LOG_LEVEL: Annotated[str, Field(
        description='Log level for application logging',
        pattern=r'^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$'
    )] = 'INFO'

    @model_validator(mode='after')
    def check_backoff_bounds(self) -> 'OrderingEnvVars':
        """Reject a backoff ceiling below the base delay."""
        if self.RETRY_BACKOFF_MAX_SECONDS < self.RETRY_BACKOFF_BASE_SECONDS:
            raise ValueError('RETRY_BACKOFF_MAX_SECONDS must be >= RETRY_BACKOFF_BASE_SECONDS')
        return self

    def retry_policy(self) -> RetryPolicy:
        """Build the bounded redelivery policy described by these settings."""
        return RetryPolicy(
            max_attempts=self.MAX_DELIVERY_ATTEMPTS,
            backoff_base_seconds=self.RETRY_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=self.RETRY_BACKOFF_MAX_SECONDS,
        )


def get_handler_env_vars() -> OrderingEnvVars:
    """
    Get typed environment variables for the checkout consumer.

    Returns:
        Validated environment variables model instance
    """
    return get_environment_variables(model=OrderingEnvVars)

"""
DynamoDB implementation of the order store.

Orders live in a table keyed by ``customer_id`` (partition) and ``order_date``
(sort). The conditional put is the single commit point for a checkout: a
second writer for the same key always observes the first writer's record.
"""

import functools
import time
from datetime import datetime
from typing import Any, Dict, Iterator, Optional, Union

import boto3
from aws_lambda_powertools.metrics import MetricUnit
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from swn_ordering.dal import BaseOrderStore, PutOutcome, PutResult, StoreRejectedError, StoreUnavailableError
from swn_ordering.handlers.utils.observability import logger, metrics, tracer
from swn_ordering.models.checkout import canonical_timestamp, parse_timestamp
from swn_ordering.models.order import Order

PARTITION_KEY = 'customer_id'
SORT_KEY = 'order_date'

# Errors DynamoDB returns for requests that are wrong in themselves
NON_RETRYABLE_ERROR_CODES = frozenset({
    'ValidationException',
    'SerializationException',
    'ItemCollectionSizeLimitExceededException',
})


def normalize_order_timestamp(value: Union[str, datetime]) -> str:
    """Bring a caller-supplied order timestamp into the stored canonical form."""
    if isinstance(value, str):
        value = datetime.fromisoformat(parse_timestamp(value))
    return canonical_timestamp(value)


def handle_dynamodb_errors(operation: str):
    """Decorator translating boto errors into DAL errors."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            operation_start = time.time()
            try:
                result = func(self, *args, **kwargs)

                duration_ms = (time.time() - operation_start) * 1000
                metrics.add_metric(name=f"DynamoDB{operation}Duration", unit=MetricUnit.Milliseconds, value=duration_ms)
                return result

            except ClientError as e:
                error_code = e.response['Error']['Code']
                error_message = e.response['Error'].get('Message', str(e))

                metrics.add_metric(name=f"DynamoDB{operation}Error", unit=MetricUnit.Count, value=1)
                logger.error(f"DynamoDB {operation} error", extra={
                    "error_code": error_code,
                    "error_message": error_message,
                    "table_name": self.table_name,
                    "operation": operation,
                })

                if error_code in NON_RETRYABLE_ERROR_CODES:
                    raise StoreRejectedError(
                        message=f"DynamoDB rejected {operation}: {error_message}",
                        operation=operation,
                        table_name=self.table_name,
                        error_code=f"DYNAMODB_{error_code}",
                    ) from e

                raise StoreUnavailableError(
                    message=f"DynamoDB {operation} failed: {error_message}",
                    operation=operation,
                    table_name=self.table_name,
                    error_code=f"DYNAMODB_{error_code}",
                ) from e

            except BotoCoreError as e:
                metrics.add_metric(name=f"DynamoDB{operation}Error", unit=MetricUnit.Count, value=1)
                logger.error(f"DynamoDB connection error during {operation}", extra={
                    "error": str(e),
                    "table_name": self.table_name,
                })
                raise StoreUnavailableError(
                    message=f"Database connection error: {e}",
                    operation=operation,
                    table_name=self.table_name,
                    error_code="DATABASE_CONNECTION_ERROR",
                ) from e

        return wrapper
    return decorator


class DynamoDbOrderStore(BaseOrderStore):
    """DynamoDB implementation of the order store."""

    def __init__(
        self,
        table_name: str,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        dynamodb_resource: Optional[Any] = None,
        page_size: int = 100,
    ) -> None:
        """
        Initialize the DynamoDB order store.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region name
            endpoint_url: DynamoDB endpoint URL (for local testing)
            dynamodb_resource: Pre-built boto3 DynamoDB resource
            page_size: Items requested per query page
        """
        super().__init__(table_name)
        self.page_size = page_size

        if dynamodb_resource is None:
            resource_kwargs = {}
            if region_name:
                resource_kwargs['region_name'] = region_name
            if endpoint_url:
                resource_kwargs['endpoint_url'] = endpoint_url
            dynamodb_resource = boto3.resource('dynamodb', **resource_kwargs)

        self.table = dynamodb_resource.Table(table_name)
        logger.debug(f'DynamoDB order store initialized for table: {table_name}')

    @tracer.capture_method
    def put_if_absent(self, order: Order) -> PutResult:
        """
        Conditionally insert an order.

        Args:
            order: Order to store

        Returns:
            PutResult with INSERTED and the given order, or ALREADY_EXISTS and
            the order already stored under the same key

        Raises:
            StoreUnavailableError: If DynamoDB cannot be reached
            StoreRejectedError: If DynamoDB rejects the item
        """
        if self._put_order(order):
            logger.info('Order inserted', extra={
                'order_id': order.order_id,
                'customer_id': order.customer_id,
                'order_date': order.order_date,
                'status': order.status.value,
            })
            tracer.put_annotation('order_inserted', order.order_id)
            return PutResult(PutOutcome.INSERTED, order)

        existing = self._get_order(order.customer_id, order.order_date)
        if existing is None:
            # Orders are never deleted, so a failed condition implies a stored record
            raise StoreUnavailableError(
                message=f'Order key ({order.customer_id}, {order.order_date}) was taken but could not be read',
                operation='PutItem',
                table_name=self.table_name,
                error_code='INCONSISTENT_READ',
            )

        logger.info('Order already exists', extra={
            'order_id': existing.order_id,
            'customer_id': existing.customer_id,
            'order_date': existing.order_date,
        })
        return PutResult(PutOutcome.ALREADY_EXISTS, existing)

    def get(self, customer_id: str, order_timestamp: Optional[Union[str, datetime]] = None) -> Iterator[Order]:
        """
        Lazily yield a customer's orders in order-date order.

        Pages are fetched from DynamoDB only as the caller iterates.

        Args:
            customer_id: Customer whose orders to list
            order_timestamp: Exact order timestamp to filter on

        Yields:
            Order instances
        """
        key_condition = Key(PARTITION_KEY).eq(customer_id)
        if order_timestamp is not None:
            key_condition = key_condition & Key(SORT_KEY).eq(normalize_order_timestamp(order_timestamp))

        start_key: Optional[Dict[str, Any]] = None
        while True:
            page = self._query_page(key_condition, start_key)
            for item in page.get('Items', []):
                yield Order.from_dict(item)

            start_key = page.get('LastEvaluatedKey')
            if not start_key:
                return

    @handle_dynamodb_errors('PutItem')
    def _put_order(self, order: Order) -> bool:
        """Write the order; False when the key is already taken."""
        try:
            self.table.put_item(
                Item=order.to_dict(),
                ConditionExpression=f'attribute_not_exists({PARTITION_KEY})',
            )
            return True
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                return False
            raise

    @handle_dynamodb_errors('GetItem')
    def _get_order(self, customer_id: str, order_date: str) -> Optional[Order]:
        response = self.table.get_item(
            Key={PARTITION_KEY: customer_id, SORT_KEY: order_date},
            ConsistentRead=True,
        )
        item = response.get('Item')
        return Order.from_dict(item) if item else None

    @handle_dynamodb_errors('Query')
    def _query_page(self, key_condition: Any, start_key: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        query_kwargs = {
            'KeyConditionExpression': key_condition,
            'Limit': self.page_size,
        }
        if start_key:
            query_kwargs['ExclusiveStartKey'] = start_key

        response = self.table.query(**query_kwargs)
        logger.debug('Order page fetched', extra={
            'table_name': self.table_name,
            'items_count': response.get('Count', 0),
            'has_more_results': 'LastEvaluatedKey' in response,
        })
        return response

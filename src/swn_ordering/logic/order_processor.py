"""
Business logic for turning checkout events into orders.

The processor keeps no state between invocations. Deduplication happens in the
order store through a conditional insert keyed by the checkout itself, so any
number of concurrent or repeated deliveries of one checkout produce a single
order.
"""

from typing import List, NoReturn

from aws_lambda_powertools.metrics import MetricUnit

from swn_ordering.dal import DALError, OrderStore, PutResult
from swn_ordering.handlers.utils.errors import (
    ErrorContext,
    InvalidCheckoutError,
    OrderKeyConflictError,
    PermanentProcessingError,
    TransientProcessingError,
    create_error_context,
    log_error_metrics,
)
from swn_ordering.handlers.utils.observability import logger, metrics, tracer
from swn_ordering.logic.idempotency import derive_idempotency_key
from swn_ordering.models.checkout import CheckoutEvent, canonical_timestamp
from swn_ordering.models.order import Order, OrderStatus

# Partition for audit records of checkouts that carried no customer id
UNATTRIBUTED_CUSTOMER_ID = '__unattributed__'


class OrderProcessor:
    """Consumes checkout events and commits exactly one order per logical checkout."""

    def __init__(self, order_store: OrderStore, max_order_items: int = 100):
        """
        Initialize the order processor.

        Args:
            order_store: Store owning all order records
            max_order_items: Maximum number of basket lines allowed per order
        """
        self.order_store = order_store
        self.max_order_items = max_order_items

    @tracer.capture_method
    def handle(self, event: CheckoutEvent) -> str:
        """
        Turn a checkout event into an order.

        Args:
            event: Checkout event as delivered by the bus

        Returns:
            Id of the order for this logical checkout, new or pre-existing

        Raises:
            InvalidCheckoutError: Basket empty or malformed; a FAILED order was recorded
            OrderKeyConflictError: Another basket already owns the order key
            PermanentProcessingError: The store rejected the write, or the checkout is already a FAILED order
            TransientProcessingError: The store is unreachable; redelivery may succeed
        """
        context = create_error_context(
            request_id=event.event_id,
            operation='handle_checkout',
            user_id=event.customer_id,
        )
        tracer.put_annotation('checkout_event_id', event.event_id)

        problems = self._validate_checkout(event)
        if problems:
            self._reject(event, problems, context)

        order = Order.confirmed(
            order_id=derive_idempotency_key(event.customer_id, event.items, event.logical_timestamp),
            customer_id=event.customer_id,
            order_date=canonical_timestamp(event.logical_timestamp),
            items=event.items,
            source_event_id=event.event_id,
        )
        result = self._commit(order, context)

        if result.inserted:
            metrics.add_metric(name='OrderCreated', unit=MetricUnit.Count, value=1)
            logger.info('Order created from checkout', extra={
                'order_id': order.order_id,
                'customer_id': order.customer_id,
                'total_amount': str(order.total_amount),
                'event_id': event.event_id,
            })
            return order.order_id

        existing = result.order
        if existing.order_id != order.order_id:
            error = OrderKeyConflictError(
                customer_id=order.customer_id,
                order_date=order.order_date,
                existing_order_id=existing.order_id,
                context=context,
            )
            log_error_metrics(error)
            raise error

        if existing.status == OrderStatus.FAILED:
            # The key already holds this checkout's audit record; orders are never rewritten
            error = PermanentProcessingError(
                message=f'Checkout was already recorded as failed order {existing.order_id}: {existing.failure_reason}',
                error_code='CHECKOUT_PREVIOUSLY_FAILED',
                context=context,
            )
            log_error_metrics(error)
            raise error

        metrics.add_metric(name='DuplicateCheckout', unit=MetricUnit.Count, value=1)
        logger.info('Duplicate checkout delivery, returning existing order', extra={
            'order_id': existing.order_id,
            'event_id': event.event_id,
            'source_event_id': existing.source_event_id,
        })
        return existing.order_id

    def _validate_checkout(self, event: CheckoutEvent) -> List[str]:
        """Collect every reason the checkout cannot become a confirmed order."""
        problems = []

        if not event.customer_id or not event.customer_id.strip():
            problems.append('missing customer id')

        if not event.items:
            problems.append('basket is empty')
        elif len(event.items) > self.max_order_items:
            problems.append(f'basket has {len(event.items)} lines, limit is {self.max_order_items}')

        for index, item in enumerate(event.items):
            if not item.product_id:
                problems.append(f'item {index} has no product id')
            if item.quantity <= 0:
                problems.append(f'item {index} ({item.product_id}) has non-positive quantity {item.quantity}')
            if item.unit_price < 0:
                problems.append(f'item {index} ({item.product_id}) has negative unit price {item.unit_price}')

        if event.logical_timestamp is None:
            problems.append('checkout has neither a checkout timestamp nor a basket last-modified time')

        return problems

    def _reject(self, event: CheckoutEvent, problems: List[str], context: ErrorContext) -> NoReturn:
        """Record a FAILED order for the audit trail, then refuse the checkout."""
        customer_id = event.customer_id if event.customer_id and event.customer_id.strip() else UNATTRIBUTED_CUSTOMER_ID
        order_timestamp = event.logical_timestamp or event.published_at

        failed = Order.failed(
            order_id=derive_idempotency_key(customer_id, event.items, order_timestamp),
            customer_id=customer_id,
            order_date=canonical_timestamp(order_timestamp),
            items=event.items,
            failure_reason='; '.join(problems),
            source_event_id=event.event_id,
        )
        result = self._commit(failed, context)

        if result.inserted:
            metrics.add_metric(name='OrderFailed', unit=MetricUnit.Count, value=1)
        elif result.order.order_id != failed.order_id:
            logger.warning('Order key taken by another order, audit record not written', extra={
                'customer_id': failed.customer_id,
                'order_date': failed.order_date,
                'existing_order_id': result.order.order_id,
            })

        error = InvalidCheckoutError(problems=problems, order_id=failed.order_id, context=context)
        log_error_metrics(error)
        raise error

    def _commit(self, order: Order, context: ErrorContext) -> PutResult:
        """Conditionally insert the order, classifying store failures."""
        try:
            return self.order_store.put_if_absent(order)
        except DALError as e:
            if e.retryable:
                error = TransientProcessingError(
                    message=f'Order store unavailable: {e.message}',
                    error_code='ORDER_STORE_UNAVAILABLE',
                    context=context,
                )
            else:
                error = PermanentProcessingError(
                    message=f'Order store rejected the order: {e.message}',
                    error_code='ORDER_STORE_REJECTED',
                    context=context,
                )
            log_error_metrics(error)
            raise error from e


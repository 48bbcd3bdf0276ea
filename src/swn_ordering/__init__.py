"""
SWN ordering core.

Turns checked-out baskets into orders, exactly once per logical checkout:

- handlers: Lambda entry point consuming the checkout queue
- logic: Order processing and idempotency keys
- dal: Order store with conditional inserts
- events: Delivery, retry policy and dead letters
- models: Checkout and order models
"""

__version__ = "1.0.0"

from swn_ordering.models.checkout import BasketItem, CheckoutEvent
from swn_ordering.models.order import Order, OrderStatus
from swn_ordering.handlers.utils.observability import logger, tracer, metrics

__all__ = [
    "BasketItem",
    "CheckoutEvent",
    "Order",
    "OrderStatus",
    "logger",
    "tracer",
    "metrics",
]

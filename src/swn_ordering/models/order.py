"""
Order domain model.

Orders are written exactly once, by the order processor, and never change
afterwards. The order id doubles as the idempotency key of the checkout that
produced it.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from swn_ordering.models.checkout import BasketItem

# Currency minor unit
CENT = Decimal('0.01')


def to_minor_unit(amount: Decimal) -> Decimal:
    """Quantize an amount to currency minor-unit precision."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    """Order status enumeration."""

    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    FAILED = 'FAILED'


class LineItem(BaseModel):
    """A priced line of an order."""

    product_id: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    @classmethod
    def from_basket_item(cls, item: BasketItem) -> 'LineItem':
        return cls(
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
            line_total=item.unit_price * item.quantity,
        )


class Order(BaseModel):
    """Core Order domain model."""

    order_id: Annotated[str, Field(
        description='Order identifier, equal to the checkout idempotency key'
    )]

    customer_id: Annotated[str, Field(
        min_length=1,
        description='Customer who checked out',
        examples=['swn']
    )]

    order_date: Annotated[str, Field(
        description='Canonical UTC ISO timestamp of the logical checkout, the store sort key'
    )]

    items: List[LineItem] = Field(default_factory=list)

    total_amount: Annotated[Decimal, Field(
        description='Sum of unit price times quantity, in currency minor-unit precision'
    )] = Decimal('0.00')

    status: OrderStatus = OrderStatus.PENDING

    source_event_id: Annotated[Optional[str], Field(
        description='Event id of the delivery that created the order'
    )] = None

    created_at: Annotated[str, Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description='ISO timestamp when the order was written'
    )]

    failure_reason: Annotated[Optional[str], Field(
        description='Why the checkout was rejected, for FAILED orders'
    )] = None

    @staticmethod
    def compute_total(items: Iterable[BasketItem]) -> Decimal:
        """Sum unit price times quantity over the basket."""
        return to_minor_unit(sum((item.unit_price * item.quantity for item in items), Decimal('0')))

    @classmethod
    def confirmed(
        cls,
        order_id: str,
        customer_id: str,
        order_date: str,
        items: Iterable[BasketItem],
        source_event_id: Optional[str] = None,
    ) -> 'Order':
        """Create a confirmed order with its total computed from the basket."""
        items = list(items)
        return cls(
            order_id=order_id,
            customer_id=customer_id,
            order_date=order_date,
            items=[LineItem.from_basket_item(item) for item in items],
            total_amount=cls.compute_total(items),
            status=OrderStatus.CONFIRMED,
            source_event_id=source_event_id,
        )

    @classmethod
    def failed(
        cls,
        order_id: str,
        customer_id: str,
        order_date: str,
        items: Iterable[BasketItem],
        failure_reason: str,
        source_event_id: Optional[str] = None,
    ) -> 'Order':
        """Create an audit record for a checkout that was rejected."""
        return cls(
            order_id=order_id,
            customer_id=customer_id,
            order_date=order_date,
            items=[LineItem.from_basket_item(item) for item in items],
            total_amount=Decimal('0.00'),
            status=OrderStatus.FAILED,
            source_event_id=source_event_id,
            failure_reason=failure_reason,
        )

    def is_final_status(self) -> bool:
        """CONFIRMED and FAILED orders never change again."""
        return self.status in (OrderStatus.CONFIRMED, OrderStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the order to a dictionary for storage.

        Amounts stay Decimal so the DynamoDB serializer accepts them.
        """
        return {
            'order_id': self.order_id,
            'customer_id': self.customer_id,
            'order_date': self.order_date,
            'items': [
                {
                    'product_id': line.product_id,
                    'quantity': line.quantity,
                    'unit_price': line.unit_price,
                    'line_total': line.line_total,
                }
                for line in self.items
            ],
            'total_amount': self.total_amount,
            'status': self.status.value,
            'source_event_id': self.source_event_id,
            'created_at': self.created_at,
            'failure_reason': self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Order':
        """Create an Order instance from a stored dictionary."""
        return cls(
            order_id=data['order_id'],
            customer_id=data['customer_id'],
            order_date=data['order_date'],
            items=[
                LineItem(
                    product_id=line['product_id'],
                    quantity=int(line['quantity']),
                    unit_price=Decimal(str(line['unit_price'])),
                    line_total=Decimal(str(line['line_total'])),
                )
                for line in data.get('items', [])
            ],
            total_amount=Decimal(str(data['total_amount'])),
            status=OrderStatus(data['status']),
            source_event_id=data.get('source_event_id'),
            created_at=data['created_at'],
            failure_reason=data.get('failure_reason'),
        )

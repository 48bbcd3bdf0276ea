"""
Checkout event models.

A CheckoutEvent is the immutable snapshot of a basket taken when the customer
checked out. Range checks (positive quantity, non-negative price) are not
enforced here: a malformed basket still has to become a FAILED order for
auditing, so those rules live in the order processor.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from aws_lambda_powertools.utilities.data_classes import EventBridgeEvent
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def canonical_timestamp(value: datetime) -> str:
    """Render a timestamp as UTC ISO-8601; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Any:
    """Accept ISO-8601 strings with a trailing ``Z``."""
    if isinstance(value, str) and value.endswith('Z'):
        return value[:-1] + '+00:00'
    return value


class BasketItem(BaseModel):
    """One line of a basket snapshot."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    product_id: str = ''
    quantity: int
    unit_price: Decimal


class CheckoutEvent(BaseModel):
    """A basket checked out by a customer, as carried on the event bus."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    # Unique per publish attempt, not per logical checkout
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    customer_id: Optional[str] = None
    items: Tuple[BasketItem, ...] = ()
    checkout_timestamp: Optional[datetime] = None
    basket_last_modified: Optional[datetime] = None
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('checkout_timestamp', 'basket_last_modified', 'published_at', mode='before')
    @classmethod
    def accept_zulu_suffix(cls, v: Any) -> Any:
        return parse_timestamp(v)

    @property
    def logical_timestamp(self) -> Optional[datetime]:
        """Checkout time if the basket carried one, else its last-modified time."""
        return self.checkout_timestamp or self.basket_last_modified

    def to_detail(self) -> Dict[str, Any]:
        """Wire form of the event as published in an EventBridge ``detail``."""
        return self.model_dump(
            mode='json',
            by_alias=True,
            include={'customer_id', 'items', 'checkout_timestamp', 'basket_last_modified'},
            exclude_none=True,
        )

    @classmethod
    def from_detail(
        cls,
        detail: Dict[str, Any],
        event_id: Optional[str] = None,
        published_at: Optional[Any] = None,
    ) -> 'CheckoutEvent':
        """
        Build an event from a bare detail document.

        Raises:
            ValueError: If detail is not a JSON object or does not match the schema
        """
        if not isinstance(detail, dict):
            raise ValueError(f'Checkout detail must be a JSON object, got {type(detail).__name__}')

        data = dict(detail)
        if event_id:
            data['eventId'] = event_id
        if published_at:
            data['publishedAt'] = published_at
        return cls.model_validate(data)

    @classmethod
    def from_message_body(
        cls,
        body: str,
        fallback_event_id: Optional[str] = None,
        fallback_published_at: Optional[datetime] = None,
    ) -> 'CheckoutEvent':
        """
        Parse a queue message body.

        The EventBridge rule delivers the full event envelope to the queue; a
        bare detail document is accepted as well.

        Args:
            body: Raw JSON message body
            fallback_event_id: Identifier to use when the body has no envelope id
            fallback_published_at: Publish time to use when a bare detail carries none

        Returns:
            Parsed CheckoutEvent

        Raises:
            ValueError: If the body is not JSON or does not match the schema
        """
        document = json.loads(body, parse_float=Decimal)
        if not isinstance(document, dict):
            raise ValueError('Checkout message body must be a JSON object')

        if 'detail' in document and 'detail-type' in document:
            envelope = EventBridgeEvent(document)
            try:
                event_id, published_at = envelope.get_id, envelope.time
            except KeyError as e:
                raise ValueError(f'EventBridge envelope is missing {e}') from e
            return cls.from_detail(envelope.detail, event_id=event_id, published_at=published_at)

        return cls.from_detail(
            document,
            event_id=document.get('eventId') or fallback_event_id,
            published_at=document.get('publishedAt') or fallback_published_at,
        )

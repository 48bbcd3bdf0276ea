"""
Unit tests for Pydantic models.

This module tests parsing of checkout events from the wire and the business
rules of the Order model.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from swn_ordering.models.checkout import BasketItem, CheckoutEvent, canonical_timestamp
from swn_ordering.models.order import LineItem, Order, OrderStatus, to_minor_unit


class TestCanonicalTimestamp:
    """Test cases for timestamp normalization."""

    def test_naive_timestamp_is_taken_as_utc(self):
        assert canonical_timestamp(datetime(2024, 3, 1, 10, 0)) == "2024-03-01T10:00:00+00:00"

    def test_offset_timestamp_is_converted_to_utc(self):
        local = datetime(2024, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))

        assert canonical_timestamp(local) == "2024-03-01T10:00:00+00:00"


class TestCheckoutEvent:
    """Test cases for CheckoutEvent."""

    def test_bare_detail_body(self):
        body = json.dumps({
            "customerId": "swn",
            "items": [{"productId": "p1", "quantity": 2, "unitPrice": "10.00"}],
            "checkoutTimestamp": "2024-03-01T10:00:00Z",
        })

        event = CheckoutEvent.from_message_body(body, fallback_event_id="msg-1")

        assert event.event_id == "msg-1"
        assert event.customer_id == "swn"
        assert event.items == (BasketItem(product_id="p1", quantity=2, unit_price=Decimal("10.00")),)
        assert event.checkout_timestamp == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_json_numbers_become_exact_decimals(self):
        body = '{"customerId": "swn", "items": [{"productId": "p1", "quantity": 3, "unitPrice": 0.1}]}'

        event = CheckoutEvent.from_message_body(body)

        assert event.items[0].unit_price == Decimal("0.1")
        assert event.items[0].unit_price * 3 == Decimal("0.3")

    def test_eventbridge_envelope_body(self):
        body = json.dumps({
            "version": "0",
            "id": "eb-123",
            "detail-type": "CheckoutBasket",
            "source": "com.swn.basket.checkoutbasket",
            "account": "123456789012",
            "time": "2024-03-01T10:00:05Z",
            "region": "us-east-1",
            "resources": [],
            "detail": {
                "customerId": "swn",
                "items": [{"productId": "p1", "quantity": 1, "unitPrice": "5.50"}],
                "basketLastModified": "2024-03-01T09:59:00Z",
            },
        })

        event = CheckoutEvent.from_message_body(body, fallback_event_id="msg-1")

        assert event.event_id == "eb-123"
        assert event.published_at == datetime(2024, 3, 1, 10, 0, 5, tzinfo=timezone.utc)
        assert event.checkout_timestamp is None
        assert event.logical_timestamp == datetime(2024, 3, 1, 9, 59, tzinfo=timezone.utc)

    def test_checkout_timestamp_wins_over_last_modified(self):
        checkout = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
        event = CheckoutEvent(
            customer_id="swn",
            checkout_timestamp=checkout,
            basket_last_modified=checkout - timedelta(minutes=5),
        )

        assert event.logical_timestamp == checkout

    @pytest.mark.parametrize("body", ["not json", "[1, 2, 3]", '"swn"'])
    def test_unparseable_body_raises_value_error(self, body):
        with pytest.raises(ValueError):
            CheckoutEvent.from_message_body(body)

    @pytest.mark.parametrize("body", [
        '{"version": "0", "id": "eb-1", "detail-type": "CheckoutBasket", "time": "2024-03-01T10:00:05Z", '
        '"detail": null}',
        '{"version": "0", "id": "eb-1", "detail-type": "CheckoutBasket", "time": "2024-03-01T10:00:05Z", '
        '"detail": [1, 2]}',
        '{"version": "0", "detail-type": "CheckoutBasket", "detail": {"customerId": "swn"}}',
    ])
    def test_broken_envelope_raises_value_error(self, body):
        with pytest.raises(ValueError):
            CheckoutEvent.from_message_body(body)

    def test_bare_detail_uses_fallback_publish_time(self):
        published_at = datetime(2024, 3, 2, 8, 0, tzinfo=timezone.utc)

        event = CheckoutEvent.from_message_body('{"customerId": "swn"}', fallback_published_at=published_at)

        assert event.published_at == published_at

    def test_schema_mismatch_raises_validation_error(self):
        body = '{"customerId": "swn", "items": [{"productId": "p1", "quantity": "many", "unitPrice": "1"}]}'

        with pytest.raises(ValidationError):
            CheckoutEvent.from_message_body(body)

    def test_out_of_range_values_are_accepted_for_auditing(self):
        event = CheckoutEvent(
            customer_id="swn",
            items=(BasketItem(product_id="p1", quantity=-1, unit_price=Decimal("-2")),),
        )

        assert event.items[0].quantity == -1

    def test_to_detail_round_trips_through_from_detail(self):
        event = CheckoutEvent(
            customer_id="swn",
            items=(BasketItem(product_id="p1", quantity=2, unit_price=Decimal("10.00")),),
            checkout_timestamp=datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
        )

        detail = event.to_detail()
        restored = CheckoutEvent.from_detail(detail, event_id=event.event_id)

        assert "eventId" not in detail
        assert detail["customerId"] == "swn"
        assert detail["items"][0]["unitPrice"] == "10.00"
        assert restored.items == event.items
        assert restored.logical_timestamp == event.logical_timestamp

    def test_event_is_immutable(self):
        event = CheckoutEvent(customer_id="swn")

        with pytest.raises(ValidationError):
            event.customer_id = "other"


class TestOrder:
    """Test cases for the Order domain model."""

    def test_total_of_example_basket(self, basket_items):
        assert Order.compute_total(basket_items) == Decimal("25.50")

    def test_total_is_rounded_half_up_to_cents(self):
        items = [BasketItem(product_id="p1", quantity=1, unit_price=Decimal("0.005"))]

        assert Order.compute_total(items) == Decimal("0.01")
        assert to_minor_unit(Decimal("2.675")) == Decimal("2.68")

    def test_confirmed_order(self, basket_items):
        order = Order.confirmed(
            order_id="key-1",
            customer_id="swn",
            order_date="2024-03-01T10:00:00+00:00",
            items=basket_items,
            source_event_id="evt-1",
        )

        assert order.status == OrderStatus.CONFIRMED
        assert order.total_amount == Decimal("25.50")
        assert order.items[0] == LineItem(
            product_id="p1", quantity=2, unit_price=Decimal("10.00"), line_total=Decimal("20.00")
        )
        assert order.is_final_status()

    def test_failed_order_carries_reason_and_zero_total(self, basket_items):
        order = Order.failed(
            order_id="key-1",
            customer_id="swn",
            order_date="2024-03-01T10:00:00+00:00",
            items=basket_items,
            failure_reason="basket is empty",
        )

        assert order.status == OrderStatus.FAILED
        assert order.total_amount == Decimal("0.00")
        assert order.failure_reason == "basket is empty"
        assert order.is_final_status()

    def test_pending_is_not_final(self):
        order = Order(order_id="key-1", customer_id="swn", order_date="2024-03-01T10:00:00+00:00")

        assert order.status == OrderStatus.PENDING
        assert not order.is_final_status()

    def test_empty_customer_id_rejected(self):
        with pytest.raises(ValidationError):
            Order(order_id="key-1", customer_id="", order_date="2024-03-01T10:00:00+00:00")

    def test_from_dict_restores_stored_types(self, basket_items):
        order = Order.confirmed(
            order_id="key-1",
            customer_id="swn",
            order_date="2024-03-01T10:00:00+00:00",
            items=basket_items,
        )
        stored = order.to_dict()
        # DynamoDB hands numbers back as Decimal
        stored["items"][0]["quantity"] = Decimal("2")

        restored = Order.from_dict(stored)

        assert restored.model_dump() == order.model_dump()
        assert isinstance(restored.items[0].quantity, int)

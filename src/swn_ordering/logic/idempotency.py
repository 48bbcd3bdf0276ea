"""Deterministic idempotency keys for checkouts.

A redelivered checkout arrives with a new event id, so the key is derived
from what the customer actually checked out: who, what, and when.
"""

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from swn_ordering.models.checkout import BasketItem, canonical_timestamp


def _canonical_decimal(value: Decimal) -> str:
    """Render a decimal so that 10, 10.0 and 10.00 hash alike."""
    normalized = value.normalize()
    return format(normalized, 'f') if normalized != 0 else '0'


def basket_content_hash(items: Iterable[BasketItem]) -> str:
    """Compute a stable SHA-256 hash of the basket lines, in order.

    Lines are serialized with sorted keys and compact separators to ensure a
    deterministic representation before hashing.
    """
    lines = [
        {
            'product_id': item.product_id,
            'quantity': item.quantity,
            'unit_price': _canonical_decimal(item.unit_price),
        }
        for item in items
    ]
    body = json.dumps(lines, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(body.encode('utf-8')).hexdigest()


def derive_idempotency_key(customer_id: str, items: Iterable[BasketItem], logical_timestamp: datetime) -> str:
    """Key identifying one logical checkout, independent of how often it is delivered."""
    material = '|'.join((customer_id, basket_content_hash(items), canonical_timestamp(logical_timestamp)))
    return hashlib.sha256(material.encode('utf-8')).hexdigest()

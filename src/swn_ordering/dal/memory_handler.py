"""In-process order store, for local runs and tests of the delivery pipeline."""

import threading
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple, Union

from swn_ordering.dal import BaseOrderStore, PutOutcome, PutResult
from swn_ordering.dal.dynamodb_handler import normalize_order_timestamp
from swn_ordering.handlers.utils.observability import logger
from swn_ordering.models.order import Order


class InMemoryOrderStore(BaseOrderStore):
    """Order store backed by a dict; the lock makes check-and-insert atomic."""

    def __init__(self, table_name: str = 'in-memory-orders') -> None:
        super().__init__(table_name)
        self._orders: Dict[Tuple[str, str], Order] = {}
        self._lock = threading.Lock()

    def put_if_absent(self, order: Order) -> PutResult:
        key = (order.customer_id, order.order_date)
        with self._lock:
            existing = self._orders.get(key)
            if existing is not None:
                return PutResult(PutOutcome.ALREADY_EXISTS, existing)
            self._orders[key] = order

        logger.debug('Order inserted in memory', extra={'order_id': order.order_id})
        return PutResult(PutOutcome.INSERTED, order)

    def get(self, customer_id: str, order_timestamp: Optional[Union[str, datetime]] = None) -> Iterator[Order]:
        wanted = normalize_order_timestamp(order_timestamp) if order_timestamp is not None else None
        with self._lock:
            matches: List[Order] = [
                order for (customer, order_date), order in sorted(self._orders.items())
                if customer == customer_id and (wanted is None or order_date == wanted)
            ]
        yield from matches

    def __len__(self) -> int:
        with self._lock:
            return len(self._orders)

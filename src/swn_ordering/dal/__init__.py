"""
Data Access Layer (DAL) for order storage.

This module provides the OrderStore interface, its result types and errors,
and the factory that builds the configured store.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Iterator, Optional, Protocol, Union, runtime_checkable

from swn_ordering.handlers.utils.errors import (
    BaseServiceError,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
)
from swn_ordering.models.order import Order

if TYPE_CHECKING:
    from swn_ordering.handlers.models.env_vars import OrderingEnvVars


class PutOutcome(str, Enum):
    """Result of a conditional insert."""

    INSERTED = 'INSERTED'
    ALREADY_EXISTS = 'ALREADY_EXISTS'


@dataclass(frozen=True)
class PutResult:
    """Outcome of put_if_absent together with the record now stored under the key."""

    outcome: PutOutcome
    order: Order

    @property
    def inserted(self) -> bool:
        return self.outcome is PutOutcome.INSERTED


class DALError(BaseServiceError):
    """Base exception for Data Access Layer errors."""

    def __init__(
        self,
        message: str,
        operation: str,
        table_name: str,
        error_code: str = "DAL_ERROR",
        retryable: bool = True,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.INFRASTRUCTURE,
            context=context,
            retryable=retryable,
        )
        self.operation = operation
        self.table_name = table_name


class StoreUnavailableError(DALError):
    """The store could not be reached or refused to serve the request right now."""


class StoreRejectedError(DALError):
    """The store rejected the request itself; repeating it will not help."""

    def __init__(self, message: str, operation: str, table_name: str, error_code: str = "STORE_REJECTED",
                 context: Optional[ErrorContext] = None):
        super().__init__(
            message=message,
            operation=operation,
            table_name=table_name,
            error_code=error_code,
            retryable=False,
            context=context,
        )


@runtime_checkable
class OrderStore(Protocol):
    """Protocol defining the order store interface."""

    def put_if_absent(self, order: Order) -> PutResult:
        """Insert the order unless its (customer_id, order_date) key is taken."""
        ...

    def get(self, customer_id: str, order_timestamp: Optional[Union[str, datetime]] = None) -> Iterator[Order]:
        """Lazily yield a customer's orders, optionally only the one at order_timestamp."""
        ...


class BaseOrderStore(ABC):
    """Abstract base class for order store implementations."""

    def __init__(self, table_name: str) -> None:
        """
        Initialize the store.

        Args:
            table_name: Name of the table or namespace holding orders
        """
        self.table_name = table_name

    @abstractmethod
    def put_if_absent(self, order: Order) -> PutResult:
        """Insert the order unless its key is taken."""
        pass

    @abstractmethod
    def get(self, customer_id: str, order_timestamp: Optional[Union[str, datetime]] = None) -> Iterator[Order]:
        """Lazily yield a customer's orders."""
        pass


def get_order_store(settings: 'OrderingEnvVars', dynamodb_resource=None) -> OrderStore:
    """
    Factory function to get the configured order store.

    Args:
        settings: Validated ordering settings
        dynamodb_resource: Pre-built boto3 DynamoDB resource, if any

    Returns:
        Order store instance
    """
    # Import here to avoid circular imports
    from swn_ordering.dal.dynamodb_handler import DynamoDbOrderStore

    return DynamoDbOrderStore(
        table_name=settings.ORDER_TABLE_NAME,
        region_name=settings.AWS_REGION,
        endpoint_url=settings.DYNAMODB_ENDPOINT,
        dynamodb_resource=dynamodb_resource,
    )


__all__ = [
    'BaseOrderStore',
    'DALError',
    'OrderStore',
    'PutOutcome',
    'PutResult',
    'StoreRejectedError',
    'StoreUnavailableError',
    'get_order_store',
]

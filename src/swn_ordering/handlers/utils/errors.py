"""
Error taxonomy for the ordering core.

Every failure raised by the processor, the store or the event plumbing derives
from BaseServiceError. The ``retryable`` flag is what the delivery layer acts
on: retryable errors are redelivered until the retry budget is spent,
non-retryable errors go straight to the dead-letter surface.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from aws_lambda_powertools.metrics import MetricUnit
from pydantic import BaseModel, Field

from swn_ordering.handlers.utils.observability import logger, metrics, tracer


class ErrorSeverity(str, Enum):
    """Error severity levels for classification."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ErrorCategory(str, Enum):
    """Error categories for classification."""
    VALIDATION = "VALIDATION"
    BUSINESS_LOGIC = "BUSINESS_LOGIC"
    EXTERNAL_SERVICE = "EXTERNAL_SERVICE"
    INFRASTRUCTURE = "INFRASTRUCTURE"
    TIMEOUT = "TIMEOUT"


class ErrorContext(BaseModel):
    """Context information for errors."""

    request_id: str = Field(description="Event or request identifier")
    user_id: Optional[str] = Field(default=None, description="Customer identifier if available")
    operation: str = Field(description="Operation being performed")
    resource_id: Optional[str] = Field(default=None, description="Resource identifier")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    additional_data: Dict[str, Any] = Field(default_factory=dict)


class BaseServiceError(Exception):
    """Base exception class for service errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.BUSINESS_LOGIC,
        context: Optional[ErrorContext] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.category = category
        self.context = context
        self.retryable = retryable
        self.error_id = str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging and dead letters."""
        return {
            "error_id": self.error_id,
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "retryable": self.retryable,
            "context": self.context.model_dump(mode="json") if self.context else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class ProcessingError(BaseServiceError):
    """Raised by the order processor when a checkout cannot be turned into an order."""


class TransientProcessingError(ProcessingError):
    """A failure that may succeed on redelivery (store unreachable, throttling, timeout)."""

    def __init__(
        self,
        message: str,
        error_code: str = "TRANSIENT_PROCESSING_ERROR",
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            category=category,
            context=context,
            retryable=True,
        )


class PermanentProcessingError(ProcessingError):
    """A failure that redelivery cannot fix."""

    def __init__(
        self,
        message: str,
        error_code: str = "PERMANENT_PROCESSING_ERROR",
        category: ErrorCategory = ErrorCategory.BUSINESS_LOGIC,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            category=category,
            context=context,
            retryable=False,
        )


class InvalidCheckoutError(PermanentProcessingError):
    """Raised when a checkout basket is empty or malformed."""

    def __init__(
        self,
        problems: List[str],
        order_id: Optional[str] = None,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(
            message="Invalid checkout: " + "; ".join(problems),
            error_code="INVALID_CHECKOUT",
            category=ErrorCategory.VALIDATION,
            context=context,
        )
        self.problems = problems
        self.order_id = order_id


class OrderKeyConflictError(PermanentProcessingError):
    """Raised when a different basket already owns the (customer, order date) key."""

    def __init__(
        self,
        customer_id: str,
        order_date: str,
        existing_order_id: str,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(
            message=(
                f"Order key ({customer_id}, {order_date}) is already taken by order "
                f"{existing_order_id} with different basket contents"
            ),
            error_code="ORDER_KEY_CONFLICT",
            context=context,
        )
        self.customer_id = customer_id
        self.order_date = order_date
        self.existing_order_id = existing_order_id


def create_error_context(
    request_id: str,
    operation: str,
    user_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    **additional_data: Any,
) -> ErrorContext:
    """Create an error context for consistent error handling."""
    return ErrorContext(
        request_id=request_id,
        user_id=user_id,
        operation=operation,
        resource_id=resource_id,
        additional_data=additional_data,
    )


@tracer.capture_method
def log_error_metrics(error: BaseServiceError) -> None:
    """Log error metrics for monitoring and alerting."""

    metrics.add_metric(name="ErrorCount", unit=MetricUnit.Count, value=1)
    metrics.add_metric(name=f"Error{error.category.value}Count", unit=MetricUnit.Count, value=1)

    tracer.put_annotation("error_code", error.error_code)
    tracer.put_annotation("error_retryable", error.retryable)
    tracer.put_metadata("error_details", error.to_dict())

    logger.error(
        "Service error occurred",
        extra={
            "error_id": error.error_id,
            "error_code": error.error_code,
            "error_severity": error.severity.value,
            "error_category": error.category.value,
            "error_message": error.message,
            "retryable": error.retryable,
            "context": error.context.model_dump(mode="json") if error.context else None,
        }
    )

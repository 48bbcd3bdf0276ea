"""
Checkout event bus contract and its in-process implementation.

Delivery is at-least-once: a handler may see the same checkout more than
once, and two checkouts of one customer may be delivered in either order.
Every delivery ends either acknowledged or on the dead-letter surface; nothing
is dropped.
"""

import heapq
import itertools
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from aws_lambda_powertools.metrics import MetricUnit

from swn_ordering.events.retry_policy import DeadLetter, DeliveryAttempt, DeliveryOutcome, RetryPolicy
from swn_ordering.handlers.utils.errors import BaseServiceError, ErrorCategory, ErrorSeverity, ProcessingError
from swn_ordering.handlers.utils.observability import logger, metrics
from swn_ordering.models.checkout import CheckoutEvent

CheckoutHandler = Callable[[CheckoutEvent], Any]


class EventPublishError(BaseServiceError):
    """Raised when a checkout event could not be buffered for delivery."""

    def __init__(self, message: str, event_id: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            error_code="EVENT_PUBLISH_ERROR",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXTERNAL_SERVICE,
            retryable=True,
        )
        self.event_id = event_id
        self.original_error = original_error


@dataclass(frozen=True)
class Accepted:
    """Acknowledgment that an event is buffered; says nothing about processing."""

    event_id: str
    buffered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class CheckoutEventBus(Protocol):
    """At-least-once channel from checkout producers to the order processor."""

    def publish(self, event: CheckoutEvent) -> Accepted:
        """Buffer an event for delivery."""
        ...

    def subscribe(self, handler: CheckoutHandler) -> Iterator[DeliveryAttempt]:
        """Deliver buffered events to handler, yielding one record per attempt."""
        ...


@dataclass
class _PendingDelivery:
    event: CheckoutEvent
    attempt: int = 1


class InMemoryCheckoutEventBus:
    """
    In-process checkout event bus with explicit, bounded redelivery.

    The bus is created at startup and closed at shutdown; use it as a context
    manager. Deliveries due at the same time go out in publish order.
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        handler_timeout_seconds: Optional[float] = None,
        max_workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the bus.

        Args:
            retry_policy: Redelivery budget and backoff; defaults to 5 attempts
            handler_timeout_seconds: Time budget per delivery; None disables it
            max_workers: Threads available for timed deliveries
            clock: Monotonic clock in seconds
            sleep: Called to wait for the next due delivery
        """
        self.retry_policy = retry_policy or RetryPolicy()
        self.handler_timeout_seconds = handler_timeout_seconds
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._pending: List[Tuple[float, int, _PendingDelivery]] = []
        self._sequence = itertools.count()
        self._dead_letters: List[DeadLetter] = []
        self._closed = False

        # Timed-out handlers keep running on their worker; the store's conditional insert keeps that harmless
        self._executor = ThreadPoolExecutor(max_workers=max_workers) if handler_timeout_seconds else None

    def __enter__(self) -> 'InMemoryCheckoutEventBus':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def close(self) -> None:
        """Stop accepting events and release the worker threads."""
        with self._lock:
            self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    @property
    def dead_letters(self) -> Tuple[DeadLetter, ...]:
        with self._lock:
            return tuple(self._dead_letters)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def publish(self, event: CheckoutEvent) -> Accepted:
        """
        Buffer an event for delivery.

        Raises:
            EventPublishError: If the bus is closed or the payload is not a CheckoutEvent
        """
        if not isinstance(event, CheckoutEvent):
            raise EventPublishError(f"Expected a CheckoutEvent, got {type(event).__name__}")

        with self._lock:
            if self._closed:
                raise EventPublishError("Checkout event bus is closed", event_id=event.event_id)
            self._schedule(_PendingDelivery(event), self._clock())

        metrics.add_metric(name="CheckoutEventPublished", unit=MetricUnit.Count, value=1)
        logger.debug("Checkout event buffered", extra={"event_id": event.event_id})
        return Accepted(event_id=event.event_id)

    def subscribe(self, handler: CheckoutHandler) -> Iterator[DeliveryAttempt]:
        """
        Deliver buffered events to handler until nothing is pending.

        Each iteration makes one delivery attempt, waiting for its backoff to
        elapse when needed, and yields its record.
        """
        while True:
            with self._lock:
                if not self._pending:
                    return
                due_at, _, delivery = heapq.heappop(self._pending)

            wait = due_at - self._clock()
            if wait > 0:
                self._sleep(wait)

            yield self._deliver(handler, delivery)

    def replay_dead_letters(self) -> int:
        """Put every dead-lettered event back on the bus with a fresh budget."""
        with self._lock:
            if self._closed:
                raise EventPublishError("Checkout event bus is closed")
            replayed, self._dead_letters = self._dead_letters, []
            now = self._clock()
            for dead_letter in replayed:
                event = CheckoutEvent.from_detail(
                    dead_letter.payload,
                    event_id=dead_letter.event_id,
                    published_at=dead_letter.published_at,
                )
                self._schedule(_PendingDelivery(event), now)

        logger.info("Dead letters replayed", extra={"count": len(replayed)})
        return len(replayed)

    def _schedule(self, delivery: _PendingDelivery, due_at: float) -> None:
        heapq.heappush(self._pending, (due_at, next(self._sequence), delivery))

    def _invoke(self, handler: CheckoutHandler, event: CheckoutEvent) -> Any:
        if self._executor is None:
            return handler(event)
        return self._executor.submit(handler, event).result(timeout=self.handler_timeout_seconds)

    def _deliver(self, handler: CheckoutHandler, delivery: _PendingDelivery) -> DeliveryAttempt:
        event = delivery.event
        try:
            result = self._invoke(handler, event)
        except ProcessingError as e:
            return self._fail(delivery, reason=e.message, error_code=e.error_code, retryable=e.retryable)
        except FuturesTimeoutError:
            return self._fail(
                delivery,
                reason=f"Processing exceeded {self.handler_timeout_seconds}s",
                error_code="PROCESSING_TIMEOUT",
                retryable=True,
            )
        except Exception as e:
            # Unclassified failures are retried so they cannot be lost
            logger.exception("Unexpected error in checkout handler", extra={"event_id": event.event_id})
            return self._fail(
                delivery, reason=f"{type(e).__name__}: {e}", error_code="UNEXPECTED_ERROR", retryable=True
            )

        return DeliveryAttempt(
            event_id=event.event_id,
            attempt=delivery.attempt,
            outcome=DeliveryOutcome.ACKNOWLEDGED,
            result=result,
        )

    def _fail(self, delivery: _PendingDelivery, reason: str, error_code: str, retryable: bool) -> DeliveryAttempt:
        event = delivery.event

        if retryable and not self.retry_policy.is_exhausted(delivery.attempt):
            delay = self.retry_policy.backoff_for(delivery.attempt)
            with self._lock:
                self._schedule(_PendingDelivery(event, delivery.attempt + 1), self._clock() + delay)

            metrics.add_metric(name="CheckoutRedeliveryScheduled", unit=MetricUnit.Count, value=1)
            logger.warning("Checkout delivery failed, redelivery scheduled", extra={
                "event_id": event.event_id,
                "attempt": delivery.attempt,
                "backoff_seconds": delay,
                "reason": reason,
            })
            return DeliveryAttempt(
                event_id=event.event_id,
                attempt=delivery.attempt,
                outcome=DeliveryOutcome.RETRY_SCHEDULED,
                error=reason,
            )

        dead_letter = DeadLetter(
            event_id=event.event_id,
            payload=event.to_detail(),
            reason=reason,
            error_code=error_code,
            attempts=delivery.attempt,
            published_at=event.published_at,
        )
        with self._lock:
            self._dead_letters.append(dead_letter)

        metrics.add_metric(name="CheckoutDeadLettered", unit=MetricUnit.Count, value=1)
        logger.error("Checkout event dead-lettered", extra={
            "event_id": event.event_id,
            "attempts": delivery.attempt,
            "error_code": error_code,
            "reason": reason,
        })
        return DeliveryAttempt(
            event_id=event.event_id,
            attempt=delivery.attempt,
            outcome=DeliveryOutcome.DEAD_LETTERED,
            error=reason,
        )

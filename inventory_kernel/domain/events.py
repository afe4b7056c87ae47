"""
Domain events published by the TransactionCoordinator.

Events are immutable facts about committed changes.  The coordinator
collects them while a unit of work runs and hands them to the EventBus only
after the commit succeeds, so a subscriber never observes a change that was
rolled back.  Subscribers run synchronously; an exception in one is logged
and does not stop the others or affect the committed outcome.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from inventory_kernel.logging_config import get_logger

logger = get_logger("domain.events")


@dataclass(frozen=True)
class DomainEvent:
    occurred_at: datetime
    event_id: UUID = field(default_factory=uuid4, kw_only=True)

    @property
    def event_type(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class StockMovementPosted(DomainEvent):
    movement_id: UUID
    product_id: UUID
    warehouse_id: UUID
    quantity_delta: Decimal
    reason: str
    transaction_id: UUID
    balance_after: Decimal


@dataclass(frozen=True)
class JournalEntriesPosted(DomainEvent):
    batch_id: UUID
    transaction_id: UUID
    entry_count: int
    total_minor_units: int
    currency: str
    reversal_of_id: UUID | None = None


@dataclass(frozen=True)
class TransactionApplied(DomainEvent):
    transaction_id: UUID
    reference_number: str
    transaction_type: str
    status: str


@dataclass(frozen=True)
class TransactionReversed(DomainEvent):
    transaction_id: UUID
    compensating_transaction_id: UUID
    transaction_type: str
    status: str


Handler = Callable[[DomainEvent], None]


class EventBus:
    """In-process publish/subscribe, keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type[DomainEvent], list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[DomainEvent], handler: Handler) -> None:
        """Register a handler.  Subscribing to DomainEvent receives everything."""
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type[DomainEvent], handler: Handler) -> None:
        self._handlers[event_type].remove(handler)

    def publish(self, event: DomainEvent) -> None:
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "event_handler_failed",
                        extra={
                            "event_type": event.event_type,
                            "event_id": str(event.event_id),
                        },
                    )

    def publish_all(self, events) -> None:
        for event in events:
            self.publish(event)

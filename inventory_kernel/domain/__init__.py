"""Pure domain layer: values, lifecycle tables, posting rules, events. No I/O."""

from inventory_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from inventory_kernel.domain.dtos import (
    BusinessTransactionDTO,
    LedgerLine,
    LineItemDTO,
    LineSide,
    TransactionEvent,
    TransactionStatus,
    TransactionType,
)
from inventory_kernel.domain.money import Money
from inventory_kernel.domain.results import CoreError, CoreResult
from inventory_kernel.domain.workflow import ApprovalStateMachine

__all__ = [
    "ApprovalStateMachine",
    "BusinessTransactionDTO",
    "Clock",
    "CoreError",
    "CoreResult",
    "DeterministicClock",
    "LedgerLine",
    "LineItemDTO",
    "LineSide",
    "Money",
    "SystemClock",
    "TransactionEvent",
    "TransactionStatus",
    "TransactionType",
]

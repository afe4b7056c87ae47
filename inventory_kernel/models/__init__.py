"""ORM models for the inventory kernel."""

from inventory_kernel.models.account import AccountType, LedgerAccount
from inventory_kernel.models.journal import JournalBatch, JournalEntry
from inventory_kernel.models.payment import (
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from inventory_kernel.models.product import Product, Warehouse
from inventory_kernel.models.sequence import SequenceCounter
from inventory_kernel.models.stock import (
    MovementReason,
    ReservationStatus,
    StockLot,
    StockMovement,
    StockReservation,
)
from inventory_kernel.models.transaction import (
    BankTransactionKind,
    BusinessTransaction,
    TransactionItem,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "AccountType",
    "BankTransactionKind",
    "BusinessTransaction",
    "JournalBatch",
    "JournalEntry",
    "LedgerAccount",
    "MovementReason",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "Product",
    "ReservationStatus",
    "SequenceCounter",
    "StockLot",
    "StockMovement",
    "StockReservation",
    "TransactionItem",
    "TransactionStatus",
    "TransactionType",
    "Warehouse",
]

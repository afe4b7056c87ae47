"""
Module: inventory_kernel.models.payment
Responsibility: Append-only payments and refunds against applied
    transactions.  A transaction's paid amount and payment status are
    derived from these rows, never stored on the header.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import TrackedBase, UUIDString
from inventory_kernel.db.types import CurrencyCode, MinorUnits


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK = "bank"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class Payment(TrackedBase):
    __tablename__ = "payments"

    __table_args__ = (Index("idx_payment_txn", "transaction_id"),)

    transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("business_transactions.id"), nullable=False
    )
    amount: Mapped[MinorUnits] = mapped_column(nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(String(10), nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # The journal batch posted for this payment uses the payment id as its
    # transaction id, so reversing the business transaction leaves it alone.
    journal_batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("journal_batches.id"), nullable=False
    )

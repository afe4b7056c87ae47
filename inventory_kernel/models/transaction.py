"""
Module: inventory_kernel.models.transaction
Responsibility: Business transaction headers (sale, purchase, returns, bank
    transactions, cancellations) and their line items.
Invariants enforced:
    - reference_number is unique (SAL-000001, PUR-000001, ...).
    - Items cascade-delete with the header only while it is unapplied
      (draft/pending).  Applied headers are never deleted.
    - Once applied, a header changes only its status annotation and the
      reversed_by_id link to its compensating record.
    - reversal_of_id is unique: a transaction has at most one compensating
      record.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_kernel.db.base import TrackedBase, UUIDString
from inventory_kernel.db.types import CurrencyCode, MinorUnits, Quantity, UnitCost
from inventory_kernel.domain.dtos import (  # noqa: F401
    BankTransactionKind,
    TransactionStatus,
    TransactionType,
)


class BusinessTransaction(TrackedBase):
    __tablename__ = "business_transactions"

    __table_args__ = (
        UniqueConstraint("reference_number", name="uq_business_txn_reference"),
        UniqueConstraint("reversal_of_id", name="uq_business_txn_reversal"),
        Index("idx_business_txn_type_status", "transaction_type", "status"),
        Index("idx_business_txn_original", "original_transaction_id"),
    )

    transaction_type: Mapped[TransactionType] = mapped_column(
        String(30), nullable=False
    )
    reference_number: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(String(20), nullable=False)
    counterparty_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    warehouse_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("warehouses.id"), nullable=True
    )
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(nullable=False)

    subtotal: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)
    tax_amount: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)
    discount_amount: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)
    total_amount: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)

    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Partial return documents point at the sale/purchase they return
    original_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("business_transactions.id"), nullable=True
    )
    # Compensating record created by reverse(), both directions
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("business_transactions.id"), nullable=True
    )
    reversed_by_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("business_transactions.id"), nullable=True
    )

    # Bank transactions only
    bank_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    from_account_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("ledger_accounts.id"), nullable=True
    )
    to_account_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("ledger_accounts.id"), nullable=True
    )

    items: Mapped[list["TransactionItem"]] = relationship(
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionItem.line_no",
    )

    def __repr__(self) -> str:
        return f"<BusinessTransaction {self.reference_number} {self.status}>"


class TransactionItem(TrackedBase):
    """
    One line of a business transaction.

    ``unit_cost`` is filled in when the transaction is applied: the per-unit
    cost booked for the line's stock movement.
    """

    __tablename__ = "transaction_items"

    __table_args__ = (Index("idx_transaction_item_txn", "transaction_id"),)

    transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("business_transactions.id"), nullable=False
    )
    line_no: Mapped[int] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=False
    )
    quantity: Mapped[Quantity] = mapped_column(nullable=False)
    unit_price: Mapped[MinorUnits] = mapped_column(nullable=False)
    line_total: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)
    batch: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    unit_cost: Mapped[UnitCost | None] = mapped_column(nullable=True)

    transaction: Mapped[BusinessTransaction] = relationship(back_populates="items")

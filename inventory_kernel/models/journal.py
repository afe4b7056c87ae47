"""
Module: inventory_kernel.models.journal
Responsibility: Append-only double-entry journal.
Invariants enforced:
    - Each JournalEntry has exactly one non-zero side: debit or credit, both
      non-negative minor units in the batch currency.
    - Per transaction_id, sum(debit) == sum(credit).  Every batch is
      balanced on its own, so any set of batches is too.
    - Batches and entries are never updated or deleted.  A reversal batch
      references its original through reversal_of_id, which is unique, so a
      batch is reversed at most once.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_kernel.db.base import TrackedBase, UUIDString
from inventory_kernel.db.types import CurrencyCode, MinorUnits


class JournalBatch(TrackedBase):
    """The entries posted together for one transaction id."""

    __tablename__ = "journal_batches"

    __table_args__ = (
        UniqueConstraint("reversal_of_id", name="uq_journal_batch_reversal"),
        Index("idx_journal_batch_txn", "transaction_id"),
    )

    transaction_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    description: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(nullable=False)
    posted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("journal_batches.id"), nullable=True
    )

    entries: Mapped[list["JournalEntry"]] = relationship(
        back_populates="batch",
        order_by="JournalEntry.line_no",
    )

    @property
    def total_debits(self) -> int:
        return sum(e.debit for e in self.entries)

    @property
    def total_credits(self) -> int:
        return sum(e.credit for e in self.entries)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits


class JournalEntry(TrackedBase):
    __tablename__ = "journal_entries"

    __table_args__ = (
        Index("idx_journal_entry_account", "account_id", "posted_at"),
        Index("idx_journal_entry_txn", "transaction_id"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("journal_batches.id"), nullable=False
    )
    line_no: Mapped[int] = mapped_column(nullable=False)
    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("ledger_accounts.id"), nullable=False
    )
    debit: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)
    credit: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(nullable=False)
    transaction_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    description: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    posted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    batch: Mapped[JournalBatch] = relationship(back_populates="entries")

    def __repr__(self) -> str:
        side = f"Dr {self.debit}" if self.debit else f"Cr {self.credit}"
        return f"<JournalEntry {self.account_id} {side}>"

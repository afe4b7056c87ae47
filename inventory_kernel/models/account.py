"""
Module: inventory_kernel.models.account
Responsibility: Chart of accounts, the target of every journal entry.
Invariants enforced:
    - code is unique.
    - No balance column: balances are derived by summing journal entries
      (AccountLedger.balance_of, LedgerSelector).
    - An account referenced by a journal entry is never deleted.
"""

from enum import Enum

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import TrackedBase
from inventory_kernel.db.types import CurrencyCode, MinorUnits


class AccountType(str, Enum):
    """Types of accounts in the chart of accounts."""

    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    INCOME = "income"
    EXPENSE = "expense"

    @property
    def is_debit_normal(self) -> bool:
        return self in (AccountType.ASSET, AccountType.EXPENSE)


class LedgerAccount(TrackedBase):
    """
    Chart of accounts entry.

    ``opening_balance`` records the declared opening figure in minor units.
    It is informational: the opening amount only affects balances through
    the batch AccountLedger.record_opening_balance posts.
    """

    __tablename__ = "ledger_accounts"

    __table_args__ = (
        UniqueConstraint("code", name="uq_ledger_account_code"),
        Index("idx_ledger_account_type", "account_type"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(String(20), nullable=False)
    sub_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    opening_balance: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(default="USD", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<LedgerAccount {self.code}: {self.name}>"

    @property
    def is_debit_normal(self) -> bool:
        return AccountType(self.account_type).is_debit_normal

"""
Module: inventory_kernel.selectors.ledger_selector
Responsibility: Read-only journal queries: trial balance, per-account
    balances and the per-transaction balance check.  Every figure is
    summed from JournalEntry rows at query time; there are no stored
    balances.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ value types and selectors/base.py.

Failure modes:
    - Returns empty lists and zero totals when nothing has been posted.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from inventory_kernel.domain.clock import ensure_utc
from inventory_kernel.domain.money import Money
from inventory_kernel.models.account import AccountType, LedgerAccount
from inventory_kernel.models.journal import JournalEntry
from inventory_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class TrialBalanceRow:
    account_id: UUID
    account_code: str
    account_name: str
    account_type: AccountType
    currency: str
    debit_total: Money
    credit_total: Money

    @property
    def balance(self) -> Money:
        """Net balance on the account's normal side."""
        if self.account_type.is_debit_normal:
            return self.debit_total - self.credit_total
        return self.credit_total - self.debit_total


@dataclass(frozen=True)
class TrialBalance:
    rows: tuple[TrialBalanceRow, ...]
    currency: str

    @property
    def total_debits(self) -> Money:
        return Money.sum((r.debit_total for r in self.rows), self.currency)

    @property
    def total_credits(self) -> Money:
        return Money.sum((r.credit_total for r in self.rows), self.currency)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits

    def row_for(self, account_code: str) -> TrialBalanceRow | None:
        for row in self.rows:
            if row.account_code == account_code:
                return row
        return None


class LedgerSelector(BaseSelector):
    def trial_balance(
        self, currency: str, as_of: datetime | None = None
    ) -> TrialBalance:
        """
        Debit and credit totals per account for one currency.

        Accounts without entries are omitted.  Rows are ordered by code.
        """
        query = (
            select(
                LedgerAccount.id,
                LedgerAccount.code,
                LedgerAccount.name,
                LedgerAccount.account_type,
                func.sum(JournalEntry.debit),
                func.sum(JournalEntry.credit),
            )
            .join(LedgerAccount, JournalEntry.account_id == LedgerAccount.id)
            .where(JournalEntry.currency == currency)
            .group_by(
                LedgerAccount.id,
                LedgerAccount.code,
                LedgerAccount.name,
                LedgerAccount.account_type,
            )
            .order_by(LedgerAccount.code)
        )
        if as_of is not None:
            query = query.where(JournalEntry.posted_at <= ensure_utc(as_of))

        rows = tuple(
            TrialBalanceRow(
                account_id=account_id,
                account_code=code,
                account_name=name,
                account_type=AccountType(account_type),
                currency=currency,
                debit_total=Money.from_minor(int(debits or 0), currency),
                credit_total=Money.from_minor(int(credits or 0), currency),
            )
            for account_id, code, name, account_type, debits, credits in self.session.execute(
                query
            ).all()
        )
        return TrialBalance(rows=rows, currency=currency)

    def balances_by_code(self, currency: str) -> dict[str, Money]:
        """Normal-side balance of every account with entries, keyed by code."""
        return {row.account_code: row.balance for row in self.trial_balance(currency).rows}

    def balances_by_type(self, currency: str) -> dict[AccountType, Money]:
        totals = {kind: Money.zero(currency) for kind in AccountType}
        for row in self.trial_balance(currency).rows:
            totals[row.account_type] = totals[row.account_type] + row.balance
        return totals

    def transaction_totals(self, transaction_id: UUID) -> tuple[int, int]:
        """(sum of debits, sum of credits) in minor units for a transaction id."""
        debits, credits = self.session.execute(
            select(
                func.coalesce(func.sum(JournalEntry.debit), 0),
                func.coalesce(func.sum(JournalEntry.credit), 0),
            ).where(JournalEntry.transaction_id == transaction_id)
        ).one()
        return int(debits), int(credits)

    def unbalanced_transactions(self) -> list[UUID]:
        """Transaction ids whose entries do not balance.  Always empty."""
        rows = self.session.execute(
            select(JournalEntry.transaction_id)
            .group_by(JournalEntry.transaction_id)
            .having(func.sum(JournalEntry.debit) != func.sum(JournalEntry.credit))
        ).scalars()
        return list(rows)

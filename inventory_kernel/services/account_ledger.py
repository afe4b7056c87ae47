"""
AccountLedger -- chart of accounts plus the append-only double-entry journal.

Responsibility:
    Validates a set of LedgerLines, locks the accounts it touches and appends
    one JournalBatch with its JournalEntries.  Reversal appends a mirror
    batch with debit and credit swapped.  Balances are derived by summing
    entries; nothing is stored on the account.

Invariants enforced:
    - Every batch balances: sum(debit) == sum(credit), one currency.
    - Each entry has exactly one positive side.
    - Accounts are locked in sorted id order, so two postings touching the
      same accounts never deadlock on each other.
    - A batch is reversed at most once (unique reversal_of_id).

Failure modes:
    - ValidationError: empty batch, zero or negative amount.
    - CurrencyMismatchError: lines in different currencies, or a line in a
      currency other than its account's.
    - UnbalancedEntryError: debits != credits.
    - AccountNotFoundError: unknown or inactive account.
    - PostingNotFoundError / AlreadyReversedError from reverse_posting.

Flushes only.  The caller owns commit and rollback.
"""

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from inventory_kernel.domain.clock import ensure_utc
from inventory_kernel.domain.dtos import EntryRecord, LedgerLine, LineSide, PostingRecord
from inventory_kernel.domain.money import Money
from inventory_kernel.domain.posting_rules import AccountRoles, opening_balance_lines
from inventory_kernel.exceptions import (
    AccountNotFoundError,
    AlreadyReversedError,
    CurrencyMismatchError,
    PostingNotFoundError,
    UnbalancedEntryError,
    ValidationError,
)
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.account import AccountType, LedgerAccount
from inventory_kernel.models.journal import JournalBatch, JournalEntry
from inventory_kernel.services.base import BaseService

logger = get_logger("services.account_ledger")


class AccountLedger(BaseService):
    def post(
        self,
        transaction_id: UUID,
        lines: Sequence[LedgerLine],
        *,
        description: str = "",
        reversal_of_id: UUID | None = None,
    ) -> PostingRecord:
        """
        Append one balanced batch for ``transaction_id``.

        Validation runs completely before any row is locked or written.
        """
        lines = list(lines)
        if not lines:
            raise ValidationError("Journal batch has no lines", field="lines")

        currency = lines[0].amount.currency
        debits = 0
        credits = 0
        for line in lines:
            if line.amount.currency != currency:
                raise CurrencyMismatchError(currency, line.amount.currency)
            if not line.amount.is_positive:
                raise ValidationError(
                    f"Journal line amount must be positive, got {line.amount}",
                    field="lines",
                )
            if line.side is LineSide.DEBIT:
                debits += line.amount.minor_units
            else:
                credits += line.amount.minor_units
        if debits != credits:
            raise UnbalancedEntryError(
                str(Money.from_minor(debits, currency).amount),
                str(Money.from_minor(credits, currency).amount),
                currency,
            )

        accounts = self._lock_accounts({line.account_id for line in lines})
        for account in accounts.values():
            if account.currency != currency:
                raise CurrencyMismatchError(account.currency, currency)

        now = self.clock.now()
        batch = JournalBatch(
            id=uuid4(),
            transaction_id=transaction_id,
            description=description,
            currency=currency,
            posted_at=now,
            reversal_of_id=reversal_of_id,
        )
        self.session.add(batch)
        for line_no, line in enumerate(lines, start=1):
            self.session.add(
                JournalEntry(
                    id=uuid4(),
                    batch_id=batch.id,
                    line_no=line_no,
                    account_id=line.account_id,
                    debit=line.debit.minor_units,
                    credit=line.credit.minor_units,
                    currency=currency,
                    transaction_id=transaction_id,
                    description=line.memo,
                    posted_at=now,
                )
            )
        try:
            self.session.flush()
        except IntegrityError as exc:
            if reversal_of_id is not None:
                raise AlreadyReversedError("JournalBatch", reversal_of_id) from exc
            raise

        logger.info(
            "journal_batch_posted",
            extra={
                "batch_id": str(batch.id),
                "transaction_id": str(transaction_id),
                "entry_count": len(lines),
                "total_minor_units": debits,
                "currency": currency,
                "reversal_of_id": str(reversal_of_id) if reversal_of_id else None,
            },
        )
        return self._posting_record(batch.id)

    def _lock_accounts(self, account_ids: set[UUID]) -> dict[UUID, LedgerAccount]:
        rows = self.session.execute(
            select(LedgerAccount)
            .where(LedgerAccount.id.in_(account_ids))
            .order_by(LedgerAccount.id)
            .with_for_update()
        ).scalars()
        accounts = {row.id: row for row in rows}
        for account_id in sorted(account_ids, key=str):
            account = accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            if not account.is_active:
                raise AccountNotFoundError(account_id, "is inactive")
        return accounts

    def reverse_posting(
        self, transaction_id: UUID, *, reversal_transaction_id: UUID
    ) -> list[PostingRecord]:
        """
        Mirror every un-reversed batch of ``transaction_id``.

        The mirror batches are posted under ``reversal_transaction_id`` (the
        compensating record), so the original transaction's own entries are
        left untouched and still balance on their own.
        """
        batches = self.session.execute(
            select(JournalBatch)
            .where(
                JournalBatch.transaction_id == transaction_id,
                JournalBatch.reversal_of_id.is_(None),
            )
            .order_by(JournalBatch.posted_at, JournalBatch.created_at)
        ).scalars().all()
        if not batches:
            raise PostingNotFoundError(transaction_id)

        reversed_ids = set(
            self.session.execute(
                select(JournalBatch.reversal_of_id).where(
                    JournalBatch.reversal_of_id.in_([b.id for b in batches])
                )
            ).scalars()
        )
        pending = [b for b in batches if b.id not in reversed_ids]
        if not pending:
            raise AlreadyReversedError("JournalBatch", batches[0].id)

        records = []
        for batch in pending:
            entries = self.session.execute(
                select(JournalEntry)
                .where(JournalEntry.batch_id == batch.id)
                .order_by(JournalEntry.line_no)
            ).scalars()
            mirrored = [
                LedgerLine(
                    entry.account_id,
                    LineSide.CREDIT if entry.debit else LineSide.DEBIT,
                    Money.from_minor(entry.debit or entry.credit, entry.currency),
                    entry.description,
                )
                for entry in entries
            ]
            records.append(
                self.post(
                    reversal_transaction_id,
                    mirrored,
                    description=f"Reversal of {batch.description}".strip(),
                    reversal_of_id=batch.id,
                )
            )
        return records

    def balance_of(self, account_id: UUID, as_of: datetime | None = None) -> Money:
        """
        Derived balance on the account's normal side.

        Asset and expense accounts report debit - credit; liability, equity
        and income accounts report credit - debit.
        """
        account = self.session.get(LedgerAccount, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        query = select(
            func.coalesce(func.sum(JournalEntry.debit), 0),
            func.coalesce(func.sum(JournalEntry.credit), 0),
        ).where(JournalEntry.account_id == account_id)
        if as_of is not None:
            query = query.where(JournalEntry.posted_at <= ensure_utc(as_of))
        debit_total, credit_total = self.session.execute(query).one()

        if AccountType(account.account_type).is_debit_normal:
            net = int(debit_total) - int(credit_total)
        else:
            net = int(credit_total) - int(debit_total)
        return Money.from_minor(net, account.currency)

    def record_opening_balance(
        self,
        account_id: UUID,
        amount: Money,
        roles: AccountRoles,
        *,
        transaction_id: UUID | None = None,
    ) -> PostingRecord:
        """
        Post an account's opening balance against opening-balance equity.

        The declared amount is also stored on the account.  An account takes
        one opening balance; a second call is a ValidationError.
        """
        account = self.session.get(LedgerAccount, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        if account.opening_balance:
            raise ValidationError(
                f"Account {account.code} already has an opening balance",
                field="account_id",
            )
        if amount.is_zero:
            raise ValidationError("Opening balance cannot be zero", field="amount")

        lines = opening_balance_lines(
            account_id,
            amount,
            roles,
            debit_normal=AccountType(account.account_type).is_debit_normal,
        )
        record = self.post(
            transaction_id or uuid4(),
            lines,
            description=f"Opening balance {account.code}",
        )
        account.opening_balance = amount.minor_units
        self.session.flush()
        return record

    def entries_for(self, transaction_id: UUID) -> list[EntryRecord]:
        rows = self.session.execute(
            select(JournalEntry)
            .join(JournalBatch, JournalEntry.batch_id == JournalBatch.id)
            .where(JournalEntry.transaction_id == transaction_id)
            .order_by(JournalBatch.posted_at, JournalBatch.created_at, JournalEntry.line_no)
        ).scalars()
        return [self._entry_record(row) for row in rows]

    def postings_for(self, transaction_id: UUID) -> list[PostingRecord]:
        batch_ids = self.session.execute(
            select(JournalBatch.id)
            .where(JournalBatch.transaction_id == transaction_id)
            .order_by(JournalBatch.posted_at, JournalBatch.created_at)
        ).scalars().all()
        return [self._posting_record(batch_id) for batch_id in batch_ids]

    # ------------------------------------------------------------------

    def _posting_record(self, batch_id: UUID) -> PostingRecord:
        batch = self.session.get(JournalBatch, batch_id)
        entries = self.session.execute(
            select(JournalEntry)
            .where(JournalEntry.batch_id == batch_id)
            .order_by(JournalEntry.line_no)
        ).scalars()
        return PostingRecord(
            batch_id=batch.id,
            transaction_id=batch.transaction_id,
            posted_at=batch.posted_at,
            entries=tuple(self._entry_record(e) for e in entries),
            reversal_of_id=batch.reversal_of_id,
        )

    @staticmethod
    def _entry_record(entry: JournalEntry) -> EntryRecord:
        return EntryRecord(
            entry_id=entry.id,
            account_id=entry.account_id,
            debit=Money.from_minor(entry.debit, entry.currency),
            credit=Money.from_minor(entry.credit, entry.currency),
            description=entry.description,
        )

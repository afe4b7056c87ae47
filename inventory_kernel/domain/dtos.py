"""
Domain data transfer objects -- immutable values crossing layer boundaries.

Pure value objects with no I/O.  Services accept BusinessTransactionDTO and
LedgerLine; they return MovementRecord, PostingRecord, AppliedTransaction and
CompensatingTransaction.  ORM models never leave the services layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from inventory_kernel.domain.money import Money


class TransactionType(str, Enum):
    SALE = "sale"
    PURCHASE = "purchase"
    SALE_RETURN = "sale_return"
    PURCHASE_RETURN = "purchase_return"
    BANK_TRANSACTION = "bank_transaction"
    CANCELLATION = "cancellation"

    @property
    def has_items(self) -> bool:
        return self not in (
            TransactionType.BANK_TRANSACTION,
            TransactionType.CANCELLATION,
        )

    @property
    def is_return(self) -> bool:
        return self in (TransactionType.SALE_RETURN, TransactionType.PURCHASE_RETURN)

    @property
    def document_prefix(self) -> str:
        return _DOCUMENT_PREFIXES[self]


_DOCUMENT_PREFIXES = {
    TransactionType.SALE: "SAL",
    TransactionType.PURCHASE: "PUR",
    TransactionType.SALE_RETURN: "SR",
    TransactionType.PURCHASE_RETURN: "PR",
    TransactionType.BANK_TRANSACTION: "BT",
    TransactionType.CANCELLATION: "CXL",
}


class TransactionStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    POSTED = "posted"


class TransactionEvent(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    COMPLETE = "complete"
    CANCEL = "cancel"
    RETURN = "return"


class BankTransactionKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRANSFER = "transfer"


class LineSide(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"

    def flip(self) -> LineSide:
        return LineSide.CREDIT if self is LineSide.DEBIT else LineSide.DEBIT


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineItemDTO:
    product_id: UUID
    quantity: Decimal
    unit_price: Money
    batch: str = ""
    expiry_date: date | None = None


@dataclass(frozen=True)
class ReturnItemDTO:
    """
    A quantity of one original line to return; the price comes from the original.

    ``line_no`` names the original line and is needed only when the original
    carries the product and batch on several lines at different prices.
    """

    product_id: UUID
    quantity: Decimal
    batch: str = ""
    line_no: int | None = None


@dataclass(frozen=True)
class BusinessTransactionDTO:
    """
    A business transaction as the surrounding application submits it.

    Items-based types (sale, purchase and the two returns) carry ``items``
    and ``warehouse_id``.  Bank transactions carry ``bank_kind``, ``amount``
    and, for transfers, explicit ``from_account_id``/``to_account_id``.

    ``discount`` is an absolute amount; ``discount_percent`` applies to the
    subtotal.  At most one of them may be set.  ``paid_amount`` records a
    payment taken at the moment of apply (counter sales).
    """

    transaction_type: TransactionType
    currency: str
    items: tuple[LineItemDTO, ...] = ()
    warehouse_id: UUID | None = None
    counterparty_id: UUID | None = None
    transaction_date: date | None = None
    discount: Money | None = None
    discount_percent: Decimal | None = None
    notes: str | None = None
    original_transaction_id: UUID | None = None
    bank_kind: BankTransactionKind | None = None
    amount: Money | None = None
    from_account_id: UUID | None = None
    to_account_id: UUID | None = None
    paid_amount: Money | None = None
    id: UUID | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "transaction_type", TransactionType(self.transaction_type))
        object.__setattr__(self, "items", tuple(self.items))
        if self.bank_kind is not None:
            object.__setattr__(self, "bank_kind", BankTransactionKind(self.bank_kind))


@dataclass(frozen=True)
class LedgerLine:
    """One side of a journal posting: an account, a side, a positive amount."""

    account_id: UUID
    side: LineSide
    amount: Money
    memo: str = ""

    @classmethod
    def dr(cls, account_id: UUID, amount: Money, memo: str = "") -> LedgerLine:
        return cls(account_id, LineSide.DEBIT, amount, memo)

    @classmethod
    def cr(cls, account_id: UUID, amount: Money, memo: str = "") -> LedgerLine:
        return cls(account_id, LineSide.CREDIT, amount, memo)

    @property
    def debit(self) -> Money:
        return self.amount if self.side is LineSide.DEBIT else Money.zero(self.amount.currency)

    @property
    def credit(self) -> Money:
        return self.amount if self.side is LineSide.CREDIT else Money.zero(self.amount.currency)


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PricedLine:
    line_no: int
    product_id: UUID
    quantity: Decimal
    unit_price: Money
    line_total: Money
    batch: str = ""
    expiry_date: date | None = None


@dataclass(frozen=True)
class TransactionTotals:
    """subtotal + tax_amount - discount_amount == total_amount, exactly."""

    subtotal: Money
    tax_amount: Money
    discount_amount: Money
    total_amount: Money
    lines: tuple[PricedLine, ...] = ()

    @property
    def net_of_discount(self) -> Money:
        return self.subtotal - self.discount_amount


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MovementRecord:
    movement_id: UUID
    product_id: UUID
    warehouse_id: UUID
    batch: str
    quantity_delta: Decimal
    unit_cost: Decimal
    costed_value: Money
    reason: str
    transaction_id: UUID
    balance_after: Decimal
    average_cost_after: Decimal
    posted_at: datetime
    reversal_of_id: UUID | None = None


@dataclass(frozen=True)
class EntryRecord:
    entry_id: UUID
    account_id: UUID
    debit: Money
    credit: Money
    description: str = ""


@dataclass(frozen=True)
class PostingRecord:
    batch_id: UUID
    transaction_id: UUID
    posted_at: datetime
    entries: tuple[EntryRecord, ...]
    reversal_of_id: UUID | None = None

    @property
    def total_debits(self) -> Money:
        return Money.sum((e.debit for e in self.entries), self.entries[0].debit.currency)

    @property
    def total_credits(self) -> Money:
        return Money.sum((e.credit for e in self.entries), self.entries[0].credit.currency)


@dataclass(frozen=True)
class AppliedTransaction:
    transaction_id: UUID
    reference_number: str
    transaction_type: TransactionType
    status: TransactionStatus
    totals: TransactionTotals
    movements: tuple[MovementRecord, ...] = ()
    postings: tuple[PostingRecord, ...] = ()


@dataclass(frozen=True)
class CompensatingTransaction:
    original_transaction_id: UUID
    compensating_transaction_id: UUID
    reference_number: str
    transaction_type: TransactionType
    original_status: TransactionStatus
    movements: tuple[MovementRecord, ...] = ()
    postings: tuple[PostingRecord, ...] = ()


@dataclass(frozen=True)
class TransactionSummary:
    """Header view returned by draft-level operations."""

    transaction_id: UUID
    reference_number: str
    transaction_type: TransactionType
    status: TransactionStatus
    totals: TransactionTotals
    item_count: int = 0


@dataclass(frozen=True)
class PaymentRecord:
    payment_id: UUID
    transaction_id: UUID
    amount: Money
    method: str
    paid_amount: Money
    payment_status: str
    posting: PostingRecord | None = field(default=None)


@dataclass(frozen=True)
class StockAdjustment:
    transaction_id: UUID
    movement: MovementRecord | None
    posting: PostingRecord | None = None


@dataclass(frozen=True)
class StockTransfer:
    transaction_id: UUID
    outbound: MovementRecord
    inbound: MovementRecord


@dataclass(frozen=True)
class ExpenseRecord:
    expense_id: UUID
    account_id: UUID
    amount: Money
    method: str
    category: str
    posting: PostingRecord

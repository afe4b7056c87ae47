"""
TransactionSelector -- read-only views of business transactions, their
returns and their payments.

Paid amount and payment status are derived from Payment rows.  A sale or
purchase without a counterparty is settled in cash by its own journal
batch, so it reads as fully paid from the moment it is applied.  For the
return types and cancellation records "paid" means refunded.
"""

import dataclasses
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from inventory_kernel.domain.dtos import TransactionStatus, TransactionType
from inventory_kernel.domain.money import Money
from inventory_kernel.models.payment import Payment, PaymentMethod, PaymentStatus
from inventory_kernel.models.transaction import BusinessTransaction, TransactionItem
from inventory_kernel.selectors.base import BaseSelector

_COUNTED_RETURN_STATES = (TransactionStatus.APPROVED.value,)
_UNAPPLIED_STATES = (TransactionStatus.DRAFT.value, TransactionStatus.PENDING.value)
_SETTLED_TYPES = (TransactionType.SALE.value, TransactionType.PURCHASE.value)


@dataclass(frozen=True)
class ItemView:
    line_no: int
    product_id: UUID
    quantity: Decimal
    unit_price: Money
    line_total: Money
    batch: str
    expiry_date: date | None
    unit_cost: Decimal | None


@dataclass(frozen=True)
class TransactionView:
    id: UUID
    reference_number: str
    transaction_type: TransactionType
    status: TransactionStatus
    counterparty_id: UUID | None
    warehouse_id: UUID | None
    transaction_date: date
    currency: str
    subtotal: Money
    tax_amount: Money
    discount_amount: Money
    total_amount: Money
    original_transaction_id: UUID | None
    reversal_of_id: UUID | None
    reversed_by_id: UUID | None
    items: tuple[ItemView, ...] = ()


@dataclass(frozen=True)
class PaymentView:
    id: UUID
    amount: Money
    method: PaymentMethod
    paid_at: datetime


@dataclass(frozen=True)
class ReturnedAmounts:
    """Sums over the applied partial returns of one sale or purchase."""

    subtotal: Money
    discount_amount: Money
    total_amount: Money


@dataclass(frozen=True)
class PaymentSummary:
    """
    Settlement position of one transaction.

    ``credited_amount`` is what applied returns (or a cancellation) took off
    the total; ``refunded_amount`` is what was paid back against them.  A
    negative ``outstanding`` is credit owed to the counterparty.
    """

    transaction_id: UUID
    total_amount: Money
    paid_amount: Money
    status: PaymentStatus
    credited_amount: Money | None = None
    refunded_amount: Money | None = None

    @property
    def outstanding(self) -> Money:
        owed = self.total_amount - self.paid_amount
        if self.credited_amount is not None:
            owed = owed - self.credited_amount
        if self.refunded_amount is not None:
            owed = owed + self.refunded_amount
        return owed


class TransactionSelector(BaseSelector):
    def get(self, transaction_id: UUID) -> TransactionView | None:
        header = self.session.get(BusinessTransaction, transaction_id)
        return self._view(header) if header is not None else None

    def get_by_reference(self, reference_number: str) -> TransactionView | None:
        header = self.session.execute(
            select(BusinessTransaction).where(
                BusinessTransaction.reference_number == reference_number
            )
        ).scalar_one_or_none()
        return self._view(header) if header is not None else None

    def list_transactions(
        self,
        transaction_type: TransactionType | None = None,
        status: TransactionStatus | None = None,
    ) -> list[TransactionView]:
        query = select(BusinessTransaction).order_by(
            BusinessTransaction.created_at, BusinessTransaction.reference_number
        )
        if transaction_type is not None:
            query = query.where(
                BusinessTransaction.transaction_type == TransactionType(transaction_type).value
            )
        if status is not None:
            query = query.where(BusinessTransaction.status == TransactionStatus(status).value)
        return [self._view(row) for row in self.session.execute(query).scalars()]

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    def applied_return_ids(self, original_id: UUID) -> list[UUID]:
        """Partial returns applied against a sale or purchase."""
        return list(
            self.session.execute(
                select(BusinessTransaction.id).where(
                    BusinessTransaction.original_transaction_id == original_id,
                    BusinessTransaction.reversal_of_id.is_(None),
                    BusinessTransaction.status.in_(_COUNTED_RETURN_STATES),
                )
            ).scalars()
        )

    def returned_quantities(self, original_id: UUID) -> dict[tuple[UUID, str], Decimal]:
        """Quantity already returned per (product_id, batch) by applied returns."""
        rows = self.session.execute(
            select(
                TransactionItem.product_id,
                TransactionItem.batch,
                func.sum(TransactionItem.quantity),
            )
            .join(BusinessTransaction, TransactionItem.transaction_id == BusinessTransaction.id)
            .where(
                BusinessTransaction.original_transaction_id == original_id,
                BusinessTransaction.reversal_of_id.is_(None),
                BusinessTransaction.status.in_(_COUNTED_RETURN_STATES),
            )
            .group_by(TransactionItem.product_id, TransactionItem.batch)
        ).all()
        return {(product_id, batch): Decimal(str(qty)) for product_id, batch, qty in rows}

    def returned_amounts(self, original_id: UUID, currency: str) -> ReturnedAmounts:
        subtotal, discount, total = self.session.execute(
            select(
                func.coalesce(func.sum(BusinessTransaction.subtotal), 0),
                func.coalesce(func.sum(BusinessTransaction.discount_amount), 0),
                func.coalesce(func.sum(BusinessTransaction.total_amount), 0),
            ).where(
                BusinessTransaction.original_transaction_id == original_id,
                BusinessTransaction.reversal_of_id.is_(None),
                BusinessTransaction.status.in_(_COUNTED_RETURN_STATES),
            )
        ).one()
        return ReturnedAmounts(
            Money.from_minor(int(subtotal), currency),
            Money.from_minor(int(discount), currency),
            Money.from_minor(int(total), currency),
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def paid_amount(self, transaction_id: UUID) -> Money:
        header = self.session.get(BusinessTransaction, transaction_id)
        return self._paid(header)

    def payment_summary(self, transaction_id: UUID) -> PaymentSummary | None:
        """
        Paid amount, status and outstanding balance.

        For a sale or purchase on account the balance is net of applied
        returns, of a cancellation and of the refunds paid against them.
        """
        header = self.session.get(BusinessTransaction, transaction_id)
        if header is None:
            return None
        total = Money.from_minor(header.total_amount, header.currency)
        paid = self._paid(header)
        credited = refunded = None
        if header.counterparty_id is not None and header.transaction_type in _SETTLED_TYPES:
            if header.reversed_by_id is not None:
                credited = total
            else:
                credited = self.returned_amounts(header.id, header.currency).total_amount
            refunded = self._refunded(header)
        summary = PaymentSummary(
            transaction_id, total, paid, PaymentStatus.PENDING, credited, refunded
        )
        if not summary.outstanding.is_positive:
            status = PaymentStatus.PAID
        elif paid.is_positive:
            status = PaymentStatus.PARTIAL
        else:
            return summary
        return dataclasses.replace(summary, status=status)

    def payments_for(self, transaction_id: UUID) -> list[PaymentView]:
        rows = self.session.execute(
            select(Payment)
            .where(Payment.transaction_id == transaction_id)
            .order_by(Payment.paid_at, Payment.created_at)
        ).scalars()
        return [
            PaymentView(
                id=row.id,
                amount=Money.from_minor(row.amount, row.currency),
                method=PaymentMethod(row.method),
                paid_at=row.paid_at,
            )
            for row in rows
        ]

    def _paid(self, header: BusinessTransaction) -> Money:
        if header.counterparty_id is None:
            if header.status in _UNAPPLIED_STATES:
                return Money.zero(header.currency)
            # Settled in cash by the transaction's own batch
            return Money.from_minor(header.total_amount, header.currency)
        total = self.session.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.transaction_id == header.id
            )
        ).scalar_one()
        return Money.from_minor(int(total), header.currency)

    def _refunded(self, header: BusinessTransaction) -> Money:
        # Refunds are paid against the returns and the compensating record
        total = self.session.execute(
            select(func.coalesce(func.sum(Payment.amount), 0))
            .join(BusinessTransaction, Payment.transaction_id == BusinessTransaction.id)
            .where(BusinessTransaction.original_transaction_id == header.id)
        ).scalar_one()
        return Money.from_minor(int(total), header.currency)

    # ------------------------------------------------------------------

    @staticmethod
    def _view(header: BusinessTransaction) -> TransactionView:
        currency = header.currency

        def money(minor: int) -> Money:
            return Money.from_minor(minor, currency)

        return TransactionView(
            id=header.id,
            reference_number=header.reference_number,
            transaction_type=TransactionType(header.transaction_type),
            status=TransactionStatus(header.status),
            counterparty_id=header.counterparty_id,
            warehouse_id=header.warehouse_id,
            transaction_date=header.transaction_date,
            currency=currency,
            subtotal=money(header.subtotal),
            tax_amount=money(header.tax_amount),
            discount_amount=money(header.discount_amount),
            total_amount=money(header.total_amount),
            original_transaction_id=header.original_transaction_id,
            reversal_of_id=header.reversal_of_id,
            reversed_by_id=header.reversed_by_id,
            items=tuple(
                ItemView(
                    line_no=item.line_no,
                    product_id=item.product_id,
                    quantity=Decimal(item.quantity),
                    unit_price=money(item.unit_price),
                    line_total=money(item.line_total),
                    batch=item.batch,
                    expiry_date=item.expiry_date,
                    unit_cost=Decimal(item.unit_cost) if item.unit_cost is not None else None,
                )
                for item in header.items
            ),
        )

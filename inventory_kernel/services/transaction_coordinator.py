"""
TransactionCoordinator -- the single entry point for business transactions.

Responsibility:
    Owns the atomic unit of work.  One public call is one database
    transaction: validate, lock, price, post stock movements, post the
    journal batch, advance the status, commit, then publish events.  Every
    kernel failure rolls the whole unit back and comes back as a typed
    CoreResult failure; nothing half-applied is ever committed.

Architecture position:
    Kernel > Services -- imperative shell.  Composes StockLedger,
    AccountLedger, SequenceService, the ApprovalStateMachine, the posting
    rules and the read-only selectors.

Invariants enforced:
    - apply() is the only place stock and the journal change for a business
      transaction; reverse() is the only place that undoes it, and it does
      so by appending compensating rows, never by editing history.
    - Lock order is header, then lots sorted by (product, warehouse, batch),
      then accounts sorted by id.
    - Events are published only after a successful commit.

Failure modes:
    - Every InventoryKernelError becomes CoreResult.failure with its kind.
    - StaleDataError, lock-conflict OperationalErrors and unique-key races
      become CONCURRENT_MODIFICATION, which the caller may retry
      (services.retry.run_with_retry).  The coordinator never retries.
    - Any other exception is re-raised after rollback.

Usage:
    coordinator = TransactionCoordinator(session, policy, clock=clock)
    result = coordinator.apply(dto)
    if result.ok:
        applied = result.value
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterable, Sequence
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.currency import CurrencyRegistry
from inventory_kernel.domain.dtos import (
    AppliedTransaction,
    BankTransactionKind,
    BusinessTransactionDTO,
    CompensatingTransaction,
    ExpenseRecord,
    LedgerLine,
    LineItemDTO,
    MovementRecord,
    PaymentRecord,
    PostingRecord,
    PricedLine,
    ReturnItemDTO,
    StockAdjustment,
    StockTransfer,
    TransactionEvent,
    TransactionStatus,
    TransactionSummary,
    TransactionTotals,
    TransactionType,
)
from inventory_kernel.domain.events import (
    DomainEvent,
    EventBus,
    JournalEntriesPosted,
    StockMovementPosted,
    TransactionApplied,
    TransactionReversed,
)
from inventory_kernel.domain.money import Money
from inventory_kernel.domain.policy import KernelPolicy
from inventory_kernel.domain.posting_rules import (
    AccountRoles,
    Role,
    adjustment_lines,
    bank_transaction_lines,
    expense_lines,
    payment_lines,
    purchase_lines,
    purchase_return_lines,
    sale_lines,
    sale_return_lines,
)
from inventory_kernel.domain.pricing import (
    TaxPolicy,
    compute_totals,
    net_line_values,
    price_lines,
    return_discount,
)
from inventory_kernel.domain.results import CoreError, CoreResult
from inventory_kernel.domain.workflow import ApprovalStateMachine, Effect
from inventory_kernel.exceptions import (
    AlreadyReversedError,
    ConcurrentModificationError,
    CurrencyMismatchError,
    InvalidTransitionError,
    InventoryKernelError,
    ReturnQuantityExceededError,
    TransactionNotFoundError,
    ValidationError,
)
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.models.account import AccountType
from inventory_kernel.models.payment import Payment, PaymentMethod, PaymentStatus
from inventory_kernel.models.stock import MovementReason
from inventory_kernel.models.transaction import BusinessTransaction, TransactionItem
from inventory_kernel.selectors.reference_selector import ReferenceSelector
from inventory_kernel.selectors.transaction_selector import TransactionSelector
from inventory_kernel.services.account_ledger import AccountLedger
from inventory_kernel.services.sequence_service import SequenceService
from inventory_kernel.services.stock_ledger import StockLedger

logger = get_logger("services.transaction_coordinator")

T = TransactionType
S = TransactionStatus

# PostgreSQL serialization_failure, deadlock_detected, lock_not_available
_LOCK_CONFLICT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})
_UNIQUE_VIOLATION_SQLSTATE = "23505"
_UNAPPLIED = frozenset({S.DRAFT.value, S.PENDING.value})

_RETURN_TYPE_FOR = {T.SALE: T.SALE_RETURN, T.PURCHASE: T.PURCHASE_RETURN}
_ORIGINAL_TYPE_FOR = {T.SALE_RETURN: T.SALE, T.PURCHASE_RETURN: T.PURCHASE}
_REFUNDABLE = frozenset({T.SALE_RETURN.value, T.PURCHASE_RETURN.value, T.CANCELLATION.value})


def _sqlstate(exc: Exception) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def _is_lock_conflict(exc: OperationalError) -> bool:
    if _sqlstate(exc) in _LOCK_CONFLICT_SQLSTATES:
        return True
    message = str(exc.orig).lower()
    return "database is locked" in message or "deadlock" in message


def _is_unique_violation(exc: IntegrityError) -> bool:
    if _sqlstate(exc) == _UNIQUE_VIOLATION_SQLSTATE:
        return True
    return "unique" in str(exc.orig).lower()


def _decimal(value, field: str) -> Decimal:
    if isinstance(value, float):
        raise ValidationError(f"{field} must not be a float", field=field)
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"{field} is not a number: {value!r}", field=field) from exc


def _payment_method(method: str) -> PaymentMethod:
    try:
        return PaymentMethod(method)
    except ValueError:
        raise ValidationError(f"Unknown payment method {method!r}", field="method") from None


def _quantities(items: Iterable[Any]) -> dict[tuple[UUID, str], Decimal]:
    """Total quantity per (product_id, batch)."""
    totals: dict[tuple[UUID, str], Decimal] = {}
    for item in items:
        key = (item.product_id, item.batch)
        totals[key] = totals.get(key, Decimal("0")) + Decimal(item.quantity)
    return totals


class TransactionCoordinator:
    """
    Boundary over the inventory and accounting ledgers.

    Args:
        session: Session whose transaction this coordinator commits.
        policy: KernelPolicy (currency, tax, approval, account roles).
        clock: Time source; SystemClock by default.
        event_bus: Receives events after commit.
        auto_commit: When False the coordinator flushes instead of
            committing and publishes nothing; the caller commits and may
            publish ``result.events`` itself.  Failures still roll back.
    """

    def __init__(
        self,
        session: Session,
        policy: KernelPolicy | None = None,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        *,
        auto_commit: bool = True,
        state_machine: ApprovalStateMachine | None = None,
    ):
        self.session = session
        self.policy = policy or KernelPolicy()
        self.clock = clock or SystemClock()
        self.event_bus = event_bus or EventBus()
        self.auto_commit = auto_commit
        self.state_machine = state_machine or ApprovalStateMachine()

        self.stock = StockLedger(
            session,
            self.clock,
            currency=self.policy.currency,
            allow_negative_stock=self.policy.allow_negative_stock,
            reservation_ttl_seconds=self.policy.reservation_ttl_seconds,
        )
        self.accounts = AccountLedger(session, self.clock)
        self.sequences = SequenceService(session, self.clock)
        self.references = ReferenceSelector(session)
        self.transactions = TransactionSelector(session)

    # ==================================================================
    # Unit of work
    # ==================================================================

    def _run(
        self,
        operation: str,
        work: Callable[[list[DomainEvent]], Any],
        transaction_id: UUID | None = None,
    ) -> CoreResult:
        events: list[DomainEvent] = []
        with LogContext.bind(operation=operation, transaction_id=transaction_id):
            try:
                value = work(events)
                if self.auto_commit:
                    self.session.commit()
                else:
                    self.session.flush()
            except InventoryKernelError as exc:
                return self._fail(operation, exc)
            except StaleDataError as exc:
                return self._fail(
                    operation,
                    ConcurrentModificationError("StockLot", transaction_id, str(exc)),
                )
            except OperationalError as exc:
                if not _is_lock_conflict(exc):
                    self._rollback_and_log(operation)
                    raise
                return self._fail(
                    operation,
                    ConcurrentModificationError(
                        "transaction", transaction_id, "lock conflict"
                    ),
                )
            except IntegrityError as exc:
                if not _is_unique_violation(exc):
                    self._rollback_and_log(operation)
                    raise
                return self._fail(
                    operation,
                    ConcurrentModificationError(
                        "transaction", transaction_id, "unique key race"
                    ),
                )
            except Exception:
                self._rollback_and_log(operation)
                raise

        if self.auto_commit:
            self.event_bus.publish_all(events)
        return CoreResult.success(value, tuple(events))

    def _fail(self, operation: str, exc: InventoryKernelError) -> CoreResult:
        self.session.rollback()
        logger.warning(
            f"transaction_{operation}_failed",
            extra={
                "error_code": exc.code,
                "error_kind": exc.kind.value,
                "error_message": str(exc),
            },
        )
        return CoreResult.failure(CoreError.from_exception(exc))

    def _rollback_and_log(self, operation: str) -> None:
        self.session.rollback()
        logger.exception(f"transaction_{operation}_error")

    # ==================================================================
    # Public API
    # ==================================================================

    def create_draft(
        self, dto: BusinessTransactionDTO, *, reserve: bool = False
    ) -> CoreResult[TransactionSummary]:
        """
        Persist a priced, numbered, unapplied transaction.

        With ``reserve=True`` the outbound quantities of a sale or purchase
        return are held for the draft until it is applied or deleted.
        """

        def work(events):
            header, totals = self._persist(dto)
            if reserve and header.transaction_type in (T.SALE.value, T.PURCHASE_RETURN.value):
                for line in totals.lines:
                    self.stock.reserve(
                        line.product_id,
                        header.warehouse_id,
                        line.quantity,
                        batch=line.batch,
                        transaction_id=header.id,
                    )
            return self._summary(header, totals)

        return self._run("create_draft", work, dto.id)

    def apply(
        self, transaction: BusinessTransactionDTO | UUID
    ) -> CoreResult[AppliedTransaction]:
        """
        Apply a transaction: a new one given as a DTO, or an existing draft
        or pending one given by id.
        """
        if isinstance(transaction, BusinessTransactionDTO):

            def work(events):
                self._check_paid_amount(transaction)
                header, _ = self._persist(transaction)
                return self._apply_header(header, events, paid_amount=transaction.paid_amount)

            return self._run("apply", work, transaction.id)

        def work_by_id(events):
            return self._apply_header(self._lock_header(transaction), events)

        return self._run("apply", work_by_id, transaction)

    def reverse(
        self, transaction_id: UUID, event: str = TransactionEvent.CANCEL.value
    ) -> CoreResult[CompensatingTransaction]:
        """Cancel or fully return an applied transaction."""

        def work(events):
            return self._reverse_header(self._lock_header(transaction_id), event, events)

        return self._run("reverse", work, transaction_id)

    def transition(self, transaction_id: UUID, event: str) -> CoreResult:
        """
        Fire a lifecycle event.

        An ``apply`` transition delegates to apply, a ``reverse`` transition
        to reverse; any other transition only changes the status.  The value
        is an AppliedTransaction, a CompensatingTransaction or a
        TransactionSummary accordingly.
        """

        def work(events):
            header = self._lock_header(transaction_id)
            if header.reversed_by_id is not None:
                raise AlreadyReversedError(
                    "BusinessTransaction", header.id, header.reversed_by_id
                )
            found = self.state_machine.transition(
                header.transaction_type, header.status, event
            )
            if found.effect is Effect.APPLY:
                return self._apply_header(header, events)
            if found.effect is Effect.REVERSE:
                return self._reverse_header(header, event, events)
            header.status = found.to_state.value
            self.session.flush()
            logger.info(
                "transaction_status_changed",
                extra={
                    "reference_number": header.reference_number,
                    "event": TransactionEvent(event).value,
                    "status": header.status,
                },
            )
            return self._summary(header, self._totals_of(header))

        return self._run("transition", work, transaction_id)

    def create_return(
        self, original_id: UUID, items: Sequence[ReturnItemDTO]
    ) -> CoreResult[TransactionSummary]:
        """Draft a partial return against an applied sale or purchase."""

        def work(events):
            original = self._lock_header(original_id)
            original_type = TransactionType(original.transaction_type)
            if original_type not in _RETURN_TYPE_FOR:
                raise ValidationError(
                    f"{original_type.value} transactions cannot be returned",
                    field="original_transaction_id",
                )
            dto = BusinessTransactionDTO(
                transaction_type=_RETURN_TYPE_FOR[original_type],
                currency=original.currency,
                items=tuple(self._return_line(original, item) for item in items),
                warehouse_id=original.warehouse_id,
                counterparty_id=original.counterparty_id,
                original_transaction_id=original.id,
            )
            header, totals = self._persist(dto)
            return self._summary(header, totals)

        return self._run("create_return", work, original_id)

    def record_payment(
        self, transaction_id: UUID, amount: Money, method: str = PaymentMethod.CASH.value
    ) -> CoreResult[PaymentRecord]:
        """Collect on an applied sale or pay an applied purchase."""

        def work(events):
            header = self._lock_header(transaction_id)
            if header.transaction_type not in (T.SALE.value, T.PURCHASE.value):
                raise ValidationError(
                    "Payments are recorded against sales and purchases; "
                    "use refund for returns",
                    field="transaction_id",
                )
            record = self._pay(header, amount, method, self._roles())
            events.append(self._posting_event(record.posting))
            return record

        return self._run("record_payment", work, transaction_id)

    def refund(
        self, return_id: UUID, amount: Money, method: str = PaymentMethod.CASH.value
    ) -> CoreResult[PaymentRecord]:
        """
        Pay out (sale side) or receive (purchase side) a refund.

        ``return_id`` is an applied return or the cancellation record of a
        sale or purchase.  The refund is capped by that record's total and by
        the credit the counterparty holds on the original, i.e. what it paid
        beyond what it still owes.
        """

        def work(events):
            header = self._lock_header(return_id)
            if header.transaction_type not in _REFUNDABLE:
                raise ValidationError(
                    "Refunds are recorded against returns and cancellations",
                    field="transaction_id",
                )
            original = self._lock_header(header.original_transaction_id)
            if original.transaction_type not in (T.SALE.value, T.PURCHASE.value):
                raise ValidationError(
                    f"{header.reference_number} does not cancel a sale or purchase",
                    field="transaction_id",
                )
            record = self._pay(header, amount, method, self._roles(), refund_of=original)
            events.append(self._posting_event(record.posting))
            return record

        return self._run("refund", work, return_id)

    def record_expense(
        self,
        amount: Money,
        *,
        method: str = PaymentMethod.CASH.value,
        account_id: UUID | None = None,
        category: str = "",
        description: str = "",
    ) -> CoreResult[ExpenseRecord]:
        """
        Book an expense paid out of cash or bank.

        The debit goes to the ``expenses`` role account unless ``account_id``
        names another active expense account.
        """
        expense_id = uuid4()

        def work(events):
            if amount.currency != self.policy.currency:
                raise CurrencyMismatchError(self.policy.currency, amount.currency)
            if not amount.is_positive:
                raise ValidationError("Expense amount must be positive", field="amount")
            paid_with = _payment_method(method)
            roles = self._roles()
            account = self.references.require_account(account_id or roles[Role.EXPENSES])
            if account.account_type != AccountType.EXPENSE.value:
                raise ValidationError(
                    f"Account {account.code} is not an expense account", field="account_id"
                )
            memo = ": ".join(part for part in (category, description) if part)
            posting = self.accounts.post(
                expense_id,
                expense_lines(amount, account.id, paid_with.value, roles),
                description=f"Expense {memo}" if memo else "Expense",
            )
            events.append(self._posting_event(posting))
            logger.info(
                "expense_recorded",
                extra={
                    "expense_id": str(expense_id),
                    "account_code": account.code,
                    "category": category,
                    "amount_minor_units": amount.minor_units,
                    "method": paid_with.value,
                },
            )
            return ExpenseRecord(
                expense_id=expense_id,
                account_id=account.id,
                amount=amount,
                method=paid_with.value,
                category=category,
                posting=posting,
            )

        return self._run("record_expense", work, expense_id)

    def delete_draft(self, transaction_id: UUID) -> CoreResult[UUID]:
        def work(events):
            header = self._lock_header(transaction_id)
            if header.status not in _UNAPPLIED:
                raise InvalidTransitionError(
                    header.transaction_type, header.status, "delete"
                )
            released = self.stock.release_for_transaction(header.id)
            reference = header.reference_number
            self.session.delete(header)
            self.session.flush()
            logger.info(
                "transaction_draft_deleted",
                extra={"reference_number": reference, "reservations_released": released},
            )
            return transaction_id

        return self._run("delete_draft", work, transaction_id)

    def adjust_stock(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        counted_qty,
        *,
        batch: str = "",
        unit_cost: Decimal | None = None,
    ) -> CoreResult[StockAdjustment]:
        """Set on-hand to a physical count and book the value difference."""
        adjustment_id = uuid4()

        def work(events):
            self.references.require_product(product_id)
            self.references.require_warehouse(warehouse_id)
            movement = self.stock.adjust_to(
                product_id,
                warehouse_id,
                _decimal(counted_qty, "counted_qty"),
                adjustment_id,
                batch=batch,
                unit_cost=unit_cost,
            )
            posting = None
            if movement is not None:
                events.append(self._movement_event(movement))
                lines = adjustment_lines(
                    movement.costed_value,
                    self._roles(),
                    increase=movement.quantity_delta > 0,
                )
                if lines:
                    posting = self.accounts.post(
                        adjustment_id, lines, description="Stock count adjustment"
                    )
                    events.append(self._posting_event(posting))
            return StockAdjustment(adjustment_id, movement, posting)

        return self._run("adjust_stock", work, adjustment_id)

    def transfer_stock(
        self,
        product_id: UUID,
        from_warehouse_id: UUID,
        to_warehouse_id: UUID,
        qty,
        *,
        batch: str = "",
    ) -> CoreResult[StockTransfer]:
        """Move stock between warehouses.  Inventory value is unchanged, so
        no journal batch is posted."""
        transfer_id = uuid4()

        def work(events):
            self.references.require_product(product_id)
            self.references.require_warehouse(from_warehouse_id)
            self.references.require_warehouse(to_warehouse_id)
            outbound, inbound = self.stock.transfer(
                product_id,
                from_warehouse_id,
                to_warehouse_id,
                _decimal(qty, "qty"),
                transfer_id,
                batch=batch,
            )
            events.extend([self._movement_event(outbound), self._movement_event(inbound)])
            return StockTransfer(transfer_id, outbound, inbound)

        return self._run("transfer_stock", work, transfer_id)

    def expire_reservations(self) -> CoreResult[int]:
        return self._run("expire_reservations", lambda events: self.stock.expire_reservations())

    # ==================================================================
    # Drafts
    # ==================================================================

    def _persist(
        self, dto: BusinessTransactionDTO
    ) -> tuple[BusinessTransaction, TransactionTotals]:
        kind = dto.transaction_type
        if kind is T.CANCELLATION:
            raise ValidationError(
                "Cancellation records are created by reverse()", field="transaction_type"
            )
        if not CurrencyRegistry.is_valid(dto.currency):
            raise ValidationError(f"Unknown currency {dto.currency}", field="currency")
        if dto.currency != self.policy.currency:
            raise CurrencyMismatchError(self.policy.currency, dto.currency)
        if dto.id is not None and self.session.get(BusinessTransaction, dto.id) is not None:
            raise ValidationError(f"Transaction {dto.id} already exists", field="id")

        counterparty_id = dto.counterparty_id
        warehouse_id = dto.warehouse_id
        from_account_id = to_account_id = None
        if kind.has_items:
            original = None
            if kind.is_return:
                original = self._returnable_original(dto.original_transaction_id, kind)
                counterparty_id = counterparty_id or original.counterparty_id
                warehouse_id = warehouse_id or original.warehouse_id
            self.references.require_warehouse(warehouse_id)
            items = self._validated_items(dto.items)
            if original is not None:
                self._check_returnable(original, items)
            totals = self._price(dto, items, original)
        else:
            if dto.items:
                raise ValidationError("Bank transactions carry no items", field="items")
            totals, from_account_id, to_account_id = self._bank_totals(dto)

        if self.policy.requires_approval(kind):
            status = S.PENDING
        else:
            status = self.state_machine.workflow(kind).initial_state

        header = BusinessTransaction(
            id=dto.id or uuid4(),
            transaction_type=kind.value,
            reference_number=self.sequences.next_reference(kind),
            status=status.value,
            counterparty_id=counterparty_id,
            warehouse_id=warehouse_id,
            transaction_date=dto.transaction_date or self.clock.today(),
            currency=dto.currency,
            subtotal=totals.subtotal.minor_units,
            tax_amount=totals.tax_amount.minor_units,
            discount_amount=totals.discount_amount.minor_units,
            total_amount=totals.total_amount.minor_units,
            notes=dto.notes,
            original_transaction_id=dto.original_transaction_id if kind.is_return else None,
            bank_kind=dto.bank_kind.value if dto.bank_kind else None,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
        )
        header.items = [
            TransactionItem(
                line_no=line.line_no,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=line.unit_price.minor_units,
                line_total=line.line_total.minor_units,
                batch=line.batch,
                expiry_date=line.expiry_date,
            )
            for line in totals.lines
        ]
        self.session.add(header)
        self.session.flush()
        logger.info(
            "transaction_draft_created",
            extra={
                "transaction_id": str(header.id),
                "reference_number": header.reference_number,
                "transaction_type": kind.value,
                "status": header.status,
                "total_minor_units": header.total_amount,
            },
        )
        return header, totals

    def _validated_items(self, items: Sequence[LineItemDTO]) -> list[LineItemDTO]:
        if not items:
            raise ValidationError("Transaction has no line items", field="items")
        validated = []
        for item in items:
            self.references.require_product(item.product_id)
            quantity = _decimal(item.quantity, "quantity")
            if quantity <= 0:
                raise ValidationError(
                    f"Quantity must be positive, got {quantity}", field="quantity"
                )
            if item.unit_price.is_negative:
                raise ValidationError(
                    f"Unit price cannot be negative, got {item.unit_price}",
                    field="unit_price",
                )
            validated.append(dataclasses.replace(item, quantity=quantity))
        return validated

    def _price(
        self,
        dto: BusinessTransactionDTO,
        items: Sequence[LineItemDTO],
        original: BusinessTransaction | None,
    ) -> TransactionTotals:
        lines = price_lines(items, dto.currency)
        policy = self.policy.tax_policy(dto.transaction_type)
        if original is not None:
            return self._return_totals(original, lines, policy)
        return compute_totals(
            lines,
            dto.currency,
            policy,
            discount=dto.discount,
            discount_percent=dto.discount_percent,
        )

    def _bank_totals(
        self, dto: BusinessTransactionDTO
    ) -> tuple[TransactionTotals, UUID, UUID]:
        if dto.bank_kind is None:
            raise ValidationError("Bank transaction needs a kind", field="bank_kind")
        amount = dto.amount
        if amount is None or not amount.is_positive:
            raise ValidationError("Bank transaction amount must be positive", field="amount")
        if amount.currency != dto.currency:
            raise CurrencyMismatchError(dto.currency, amount.currency)

        roles = self._roles()
        if dto.bank_kind is BankTransactionKind.DEPOSIT:
            defaults = (Role.CASH, Role.BANK)
        elif dto.bank_kind is BankTransactionKind.WITHDRAW:
            defaults = (Role.BANK, Role.CASH)
        else:
            defaults = None
        if defaults is None and (dto.from_account_id is None or dto.to_account_id is None):
            raise ValidationError(
                "Transfers need both from_account_id and to_account_id",
                field="from_account_id",
            )
        from_id = dto.from_account_id or roles[defaults[0]]
        to_id = dto.to_account_id or roles[defaults[1]]
        if from_id == to_id:
            raise ValidationError(
                "Source and destination account are the same", field="to_account_id"
            )
        self.references.require_account(from_id)
        self.references.require_account(to_id)

        zero = Money.zero(dto.currency)
        return TransactionTotals(amount, zero, zero, amount), from_id, to_id

    # ==================================================================
    # Apply
    # ==================================================================

    def _apply_header(
        self,
        header: BusinessTransaction,
        events: list[DomainEvent],
        *,
        paid_amount: Money | None = None,
    ) -> AppliedTransaction:
        kind = TransactionType(header.transaction_type)
        step = self.state_machine.apply_event_from(kind, header.status)
        totals = self._totals_of(header)
        roles = self._roles()

        movements: list[MovementRecord] = []
        if kind.has_items:
            self.references.require_warehouse(header.warehouse_id)
            for item in header.items:
                self.references.require_product(item.product_id)
            original = None
            if kind.is_return:
                original = self._returnable_original(header.original_transaction_id, kind)
                self._check_returnable(original, header.items)
                totals = self._reprice_return(header, original, totals)
            self.stock.lock_lots(
                (item.product_id, header.warehouse_id, item.batch) for item in header.items
            )
            movements = self._post_stock(kind, header, totals, original)
            self.stock.consume_reservations(header.id)

        postings: list[PostingRecord] = []
        lines = self._journal_lines(kind, header, totals, movements, roles)
        if lines:
            postings.append(
                self.accounts.post(
                    header.id,
                    lines,
                    description=f"{kind.value} {header.reference_number}",
                )
            )

        header.status = step.to_state.value
        self.session.flush()

        if paid_amount is not None and paid_amount.is_positive:
            postings.append(self._pay(header, paid_amount, PaymentMethod.CASH.value, roles).posting)

        events.extend(self._movement_event(m) for m in movements)
        events.extend(self._posting_event(p) for p in postings)
        events.append(
            TransactionApplied(
                occurred_at=self.clock.now(),
                transaction_id=header.id,
                reference_number=header.reference_number,
                transaction_type=kind.value,
                status=header.status,
            )
        )
        logger.info(
            "transaction_applied",
            extra={
                "transaction_id": str(header.id),
                "reference_number": header.reference_number,
                "transaction_type": kind.value,
                "status": header.status,
                "movement_count": len(movements),
                "batch_count": len(postings),
                "total_minor_units": header.total_amount,
            },
        )
        return AppliedTransaction(
            transaction_id=header.id,
            reference_number=header.reference_number,
            transaction_type=kind,
            status=TransactionStatus(header.status),
            totals=totals,
            movements=tuple(movements),
            postings=tuple(postings),
        )

    def _post_stock(
        self,
        kind: TransactionType,
        header: BusinessTransaction,
        totals: TransactionTotals,
        original: BusinessTransaction | None,
    ) -> list[MovementRecord]:
        items = list(header.items)
        net_values = (
            net_line_values(totals) if kind in (T.PURCHASE, T.PURCHASE_RETURN) else None
        )
        records = []
        for index, item in enumerate(items):
            quantity = Decimal(item.quantity)
            common = dict(
                product_id=item.product_id,
                warehouse_id=header.warehouse_id,
                transaction_id=header.id,
                batch=item.batch,
            )
            if kind is T.PURCHASE:
                value = net_values[index]
                record = self.stock.post_movement(
                    delta=quantity,
                    unit_cost=value.amount / quantity,
                    reason=MovementReason.PURCHASE.value,
                    expiry_date=item.expiry_date,
                    value=value,
                    **common,
                )
            elif kind is T.SALE:
                record = self.stock.post_movement(
                    delta=-quantity,
                    unit_cost=None,
                    reason=MovementReason.SALE.value,
                    **common,
                )
            elif kind is T.SALE_RETURN:
                record = self.stock.post_movement(
                    delta=quantity,
                    unit_cost=self._original_unit_cost(original, item),
                    reason=MovementReason.RETURN_IN.value,
                    expiry_date=item.expiry_date,
                    **common,
                )
            else:
                value = net_values[index]
                record = self.stock.post_movement(
                    delta=-quantity,
                    unit_cost=value.amount / quantity,
                    reason=MovementReason.RETURN_OUT.value,
                    value=value,
                    at_cost=True,
                    **common,
                )
            item.unit_cost = record.unit_cost
            records.append(record)
        return records

    def _journal_lines(
        self,
        kind: TransactionType,
        header: BusinessTransaction,
        totals: TransactionTotals,
        movements: Sequence[MovementRecord],
        roles: AccountRoles,
    ) -> list[LedgerLine]:
        on_credit = header.counterparty_id is not None
        cost = Money.sum((m.costed_value for m in movements), header.currency)
        if kind is T.SALE:
            return sale_lines(totals, cost, roles, on_credit=on_credit)
        if kind is T.PURCHASE:
            return purchase_lines(totals, roles, on_credit=on_credit)
        if kind is T.SALE_RETURN:
            return sale_return_lines(totals, cost, roles, on_credit=on_credit)
        if kind is T.PURCHASE_RETURN:
            return purchase_return_lines(totals, roles, on_credit=on_credit)
        return bank_transaction_lines(
            totals.total_amount, header.from_account_id, header.to_account_id
        )

    def _check_paid_amount(self, dto: BusinessTransactionDTO) -> None:
        if dto.paid_amount is None:
            return
        if dto.transaction_type not in (T.SALE, T.PURCHASE):
            raise ValidationError(
                "paid_amount applies to sales and purchases", field="paid_amount"
            )
        if dto.counterparty_id is None:
            raise ValidationError(
                "Transactions without a counterparty are settled in cash on apply",
                field="paid_amount",
            )

    # ==================================================================
    # Returns
    # ==================================================================

    def _returnable_original(
        self, original_id: UUID | None, return_kind: TransactionType
    ) -> BusinessTransaction:
        if original_id is None:
            raise ValidationError(
                "A return must reference its original transaction",
                field="original_transaction_id",
            )
        original = self._lock_header(original_id)
        expected = _ORIGINAL_TYPE_FOR[return_kind]
        if original.transaction_type != expected.value:
            raise ValidationError(
                f"A {return_kind.value} must reference a {expected.value}",
                field="original_transaction_id",
            )
        if (
            not self.state_machine.is_applied(expected, original.status)
            or original.reversed_by_id is not None
        ):
            raise InvalidTransitionError(
                expected.value, original.status, TransactionEvent.RETURN.value
            )
        return original

    def _check_returnable(
        self, original: BusinessTransaction, items: Iterable[LineItemDTO | TransactionItem]
    ) -> None:
        returnable = self._returnable_quantities(original)
        for key, quantity in _quantities(items).items():
            available = returnable.get(key, Decimal("0"))
            if quantity > available:
                raise ReturnQuantityExceededError(key[0], quantity, available)

    def _returnable_quantities(
        self, original: BusinessTransaction
    ) -> dict[tuple[UUID, str], Decimal]:
        """Sold less already returned, per (product_id, batch)."""
        returned = self.transactions.returned_quantities(original.id)
        return {
            key: quantity - returned.get(key, Decimal("0"))
            for key, quantity in _quantities(original.items).items()
        }

    def _return_totals(
        self,
        original: BusinessTransaction,
        lines: Sequence[PricedLine],
        policy: TaxPolicy,
    ) -> TransactionTotals:
        currency = original.currency
        partial = Money.sum((line.line_total for line in lines), currency)
        returned = self.transactions.returned_amounts(original.id, currency)
        requested = _quantities(lines)
        final = all(
            requested.get(key, Decimal("0")) >= left
            for key, left in self._returnable_quantities(original).items()
        )
        discount = return_discount(
            self._totals_of(original),
            partial,
            returned_subtotal=returned.subtotal,
            carried=returned.discount_amount,
            final=final,
        )
        return compute_totals(lines, currency, policy, discount=discount)

    def _reprice_return(
        self,
        header: BusinessTransaction,
        original: BusinessTransaction,
        current: TransactionTotals,
    ) -> TransactionTotals:
        # Returns applied since the draft was priced change its discount share
        totals = self._return_totals(
            original, current.lines, self.policy.tax_policy(header.transaction_type)
        )
        if totals.total_amount != current.total_amount:
            logger.info(
                "return_repriced",
                extra={
                    "reference_number": header.reference_number,
                    "discount_minor_units": totals.discount_amount.minor_units,
                    "previous_total_minor_units": header.total_amount,
                    "total_minor_units": totals.total_amount.minor_units,
                },
            )
        header.subtotal = totals.subtotal.minor_units
        header.tax_amount = totals.tax_amount.minor_units
        header.discount_amount = totals.discount_amount.minor_units
        header.total_amount = totals.total_amount.minor_units
        return totals

    @staticmethod
    def _return_line(original: BusinessTransaction, item: ReturnItemDTO) -> LineItemDTO:
        """
        Price a returned quantity from the original line it came from.

        When the original sold the same product and batch on several lines
        at different prices, ``item.line_no`` must say which one.
        """
        matches = [
            line
            for line in original.items
            if line.product_id == item.product_id and line.batch == item.batch
        ]
        quantity = _decimal(item.quantity, "quantity")
        if item.line_no is not None:
            matches = [line for line in matches if line.line_no == item.line_no]
            if not matches:
                raise ValidationError(
                    f"Line {item.line_no} of {original.reference_number} is not "
                    f"product {item.product_id} batch {item.batch!r}",
                    field="line_no",
                )
            if quantity > Decimal(matches[0].quantity):
                raise ReturnQuantityExceededError(
                    item.product_id, quantity, Decimal(matches[0].quantity)
                )
        if not matches:
            raise ReturnQuantityExceededError(item.product_id, quantity, Decimal("0"))
        if len({line.unit_price for line in matches}) > 1:
            raise ValidationError(
                f"Product {item.product_id} was sold at more than one price on "
                f"{original.reference_number}; give the original line_no",
                field="line_no",
            )
        return LineItemDTO(
            product_id=item.product_id,
            quantity=quantity,
            unit_price=Money.from_minor(matches[0].unit_price, original.currency),
            batch=item.batch,
        )

    @staticmethod
    def _original_unit_cost(original: BusinessTransaction, item: TransactionItem) -> Decimal:
        for line in original.items:
            if line.product_id == item.product_id and line.batch == item.batch:
                if line.unit_cost is None:
                    break
                return Decimal(line.unit_cost)
        raise ValidationError(
            f"No costed line for product {item.product_id} on the original",
            field="items",
        )

    # ==================================================================
    # Reverse
    # ==================================================================

    def _reverse_header(
        self, header: BusinessTransaction, event: str, events: list[DomainEvent]
    ) -> CompensatingTransaction:
        if header.reversed_by_id is not None:
            raise AlreadyReversedError("BusinessTransaction", header.id, header.reversed_by_id)
        kind = TransactionType(header.transaction_type)
        step = self.state_machine.transition(kind, header.status, event)
        if step.effect is not Effect.REVERSE:
            raise InvalidTransitionError(kind.value, header.status, TransactionEvent(event).value)
        if kind in _RETURN_TYPE_FOR and self.transactions.applied_return_ids(header.id):
            raise ValidationError(
                f"{header.reference_number} has applied partial returns; "
                "cancel them first",
                field="transaction_id",
            )

        comp_kind = step.compensating_type
        original_status = TransactionStatus(header.status)
        compensating = BusinessTransaction(
            id=uuid4(),
            transaction_type=comp_kind.value,
            reference_number=self.sequences.next_reference(comp_kind),
            status=S.POSTED.value,
            counterparty_id=header.counterparty_id,
            warehouse_id=header.warehouse_id,
            transaction_date=self.clock.today(),
            currency=header.currency,
            subtotal=header.subtotal,
            tax_amount=header.tax_amount,
            discount_amount=header.discount_amount,
            total_amount=header.total_amount,
            notes=f"Reversal of {header.reference_number}",
            original_transaction_id=header.id,
            reversal_of_id=header.id,
            bank_kind=header.bank_kind,
            from_account_id=header.from_account_id,
            to_account_id=header.to_account_id,
        )
        if comp_kind.has_items:
            compensating.items = [
                TransactionItem(
                    line_no=item.line_no,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    line_total=item.line_total,
                    batch=item.batch,
                    expiry_date=item.expiry_date,
                    unit_cost=item.unit_cost,
                )
                for item in header.items
            ]
        self.session.add(compensating)
        self.session.flush()

        originals = self.stock.movements_for(header.id)
        self.stock.lock_lots((m.product_id, m.warehouse_id, m.batch) for m in originals)
        movements = [
            self.stock.reverse_movement(m.movement_id, compensating.id) for m in originals
        ]
        postings: list[PostingRecord] = []
        if self.accounts.postings_for(header.id):
            postings = self.accounts.reverse_posting(
                header.id, reversal_transaction_id=compensating.id
            )

        header.status = step.to_state.value
        header.reversed_by_id = compensating.id
        self.session.flush()

        events.extend(self._movement_event(m) for m in movements)
        events.extend(self._posting_event(p) for p in postings)
        events.append(
            TransactionReversed(
                occurred_at=self.clock.now(),
                transaction_id=header.id,
                compensating_transaction_id=compensating.id,
                transaction_type=kind.value,
                status=header.status,
            )
        )
        logger.info(
            "transaction_reversed",
            extra={
                "transaction_id": str(header.id),
                "reference_number": header.reference_number,
                "compensating_reference": compensating.reference_number,
                "compensating_type": comp_kind.value,
                "status": header.status,
                "movement_count": len(movements),
            },
        )
        return CompensatingTransaction(
            original_transaction_id=header.id,
            compensating_transaction_id=compensating.id,
            reference_number=compensating.reference_number,
            transaction_type=comp_kind,
            original_status=original_status,
            movements=tuple(movements),
            postings=tuple(postings),
        )

    # ==================================================================
    # Payments
    # ==================================================================

    def _pay(
        self,
        header: BusinessTransaction,
        amount: Money,
        method: str,
        roles: AccountRoles,
        *,
        refund_of: BusinessTransaction | None = None,
    ) -> PaymentRecord:
        kind = TransactionType(header.transaction_type)
        if (
            not self.state_machine.is_applied(kind, header.status)
            or header.reversed_by_id is not None
        ):
            raise InvalidTransitionError(kind.value, header.status, "pay")
        if header.counterparty_id is None:
            raise ValidationError(
                f"{header.reference_number} was settled in cash when applied",
                field="transaction_id",
            )
        if amount.currency != header.currency:
            raise CurrencyMismatchError(header.currency, amount.currency)
        if not amount.is_positive:
            raise ValidationError("Payment amount must be positive", field="amount")
        method = _payment_method(method)

        summary = self.transactions.payment_summary(header.id)
        limit = summary.outstanding
        rule = kind
        if refund_of is not None:
            credit = -self.transactions.payment_summary(refund_of.id).outstanding
            limit = min(limit, credit)
            rule = _RETURN_TYPE_FOR[TransactionType(refund_of.transaction_type)]
        if amount > limit:
            available = limit if limit.is_positive else Money.zero(header.currency)
            raise ValidationError(
                f"Payment {amount} exceeds the {available} open "
                f"on {header.reference_number}",
                field="amount",
            )

        payment_id = uuid4()
        posting = self.accounts.post(
            payment_id,
            payment_lines(rule.value, amount, method.value, roles),
            description=f"Payment {header.reference_number}",
        )
        self.session.add(
            Payment(
                id=payment_id,
                transaction_id=header.id,
                amount=amount.minor_units,
                currency=amount.currency,
                method=method.value,
                paid_at=self.clock.now(),
                journal_batch_id=posting.batch_id,
            )
        )
        self.session.flush()

        paid = summary.paid_amount + amount
        status = PaymentStatus.PAID if amount >= limit else PaymentStatus.PARTIAL
        logger.info(
            "payment_recorded",
            extra={
                "payment_id": str(payment_id),
                "reference_number": header.reference_number,
                "amount_minor_units": amount.minor_units,
                "method": method.value,
                "payment_status": status.value,
            },
        )
        return PaymentRecord(
            payment_id=payment_id,
            transaction_id=header.id,
            amount=amount,
            method=method.value,
            paid_amount=paid,
            payment_status=status.value,
            posting=posting,
        )

    # ==================================================================
    # Helpers
    # ==================================================================

    def _lock_header(self, transaction_id: UUID) -> BusinessTransaction:
        header = self.session.execute(
            select(BusinessTransaction)
            .where(BusinessTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if header is None:
            raise TransactionNotFoundError(transaction_id)
        return header

    def _roles(self) -> AccountRoles:
        codes = self.policy.role_codes
        found = self.references.accounts_by_codes(list(codes.values()))
        return AccountRoles(
            {role: found[code].id for role, code in codes.items() if code in found}
        )

    @staticmethod
    def _totals_of(header: BusinessTransaction) -> TransactionTotals:
        currency = header.currency

        def money(minor: int) -> Money:
            return Money.from_minor(minor, currency)

        lines = tuple(
            PricedLine(
                line_no=item.line_no,
                product_id=item.product_id,
                quantity=Decimal(item.quantity),
                unit_price=money(item.unit_price),
                line_total=money(item.line_total),
                batch=item.batch,
                expiry_date=item.expiry_date,
            )
            for item in header.items
        )
        return TransactionTotals(
            subtotal=money(header.subtotal),
            tax_amount=money(header.tax_amount),
            discount_amount=money(header.discount_amount),
            total_amount=money(header.total_amount),
            lines=lines,
        )

    def _summary(
        self, header: BusinessTransaction, totals: TransactionTotals
    ) -> TransactionSummary:
        return TransactionSummary(
            transaction_id=header.id,
            reference_number=header.reference_number,
            transaction_type=TransactionType(header.transaction_type),
            status=TransactionStatus(header.status),
            totals=totals,
            item_count=len(totals.lines),
        )

    def _movement_event(self, record: MovementRecord) -> StockMovementPosted:
        return StockMovementPosted(
            occurred_at=self.clock.now(),
            movement_id=record.movement_id,
            product_id=record.product_id,
            warehouse_id=record.warehouse_id,
            quantity_delta=record.quantity_delta,
            reason=record.reason,
            transaction_id=record.transaction_id,
            balance_after=record.balance_after,
        )

    def _posting_event(self, posting: PostingRecord) -> JournalEntriesPosted:
        return JournalEntriesPosted(
            occurred_at=self.clock.now(),
            batch_id=posting.batch_id,
            transaction_id=posting.transaction_id,
            entry_count=len(posting.entries),
            total_minor_units=posting.total_debits.minor_units,
            currency=posting.total_debits.currency,
            reversal_of_id=posting.reversal_of_id,
        )

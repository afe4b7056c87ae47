"""
Tests for TransactionCoordinator.

The coordinator is the boundary: every test goes through a public call and
checks what landed in both ledgers, or that nothing did.
"""

import dataclasses
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from inventory_kernel.domain.dtos import (
    BankTransactionKind,
    BusinessTransactionDTO,
    TransactionStatus,
    TransactionType,
)
from inventory_kernel.domain.events import (
    DomainEvent,
    JournalEntriesPosted,
    StockMovementPosted,
    TransactionApplied,
    TransactionReversed,
)
from inventory_kernel.domain.money import Money
from inventory_kernel.domain.pricing import TaxPolicy
from inventory_kernel.exceptions import ErrorKind, ImmutabilityViolationError
from inventory_kernel.models.journal import JournalBatch
from inventory_kernel.models.stock import StockMovement
from inventory_kernel.models.transaction import BusinessTransaction
from inventory_kernel.services.transaction_coordinator import TransactionCoordinator
from tests.conftest import CURRENCY, line, usd


def _sale_dto(product, warehouse, quantity="10", price="15.00", **kwargs):
    return BusinessTransactionDTO(
        transaction_type=TransactionType.SALE,
        currency=kwargs.pop("currency", CURRENCY),
        warehouse_id=warehouse.id,
        items=(line(product.id, quantity, price),),
        **kwargs,
    )


def _count(session, column):
    return session.execute(select(func.count(column))).scalar_one()


@pytest.fixture
def balance(account_ledger, accounts):
    def _balance(role):
        return account_ledger.balance_of(accounts[role].id)

    return _balance


class TestPurchaseAndSale:
    def test_purchase_receives_stock_and_books_inventory(
        self, coordinator, purchase, product, warehouse, balance
    ):
        applied = purchase("100", "8.00")

        assert applied.status is TransactionStatus.APPROVED
        assert applied.reference_number.startswith("PUR-")
        assert len(applied.movements) == 1
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("100")
        assert coordinator.stock.moving_average_cost(product.id, warehouse.id) == Decimal("8")
        assert balance("inventory") == usd("800.00")
        assert balance("cash") == usd("-800.00")

    def test_sale_issues_at_average_and_books_cogs(
        self, coordinator, purchase, sale, product, warehouse, balance
    ):
        purchase("100", "8.00")
        applied = sale("10", "15.00")

        assert applied.status is TransactionStatus.COMPLETED
        assert applied.totals.total_amount == usd("150.00")
        assert applied.movements[0].costed_value == usd("80.00")
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("90")
        assert coordinator.stock.moving_average_cost(product.id, warehouse.id) == Decimal("8")
        assert balance("cost_of_goods_sold") == usd("80.00")
        assert balance("sales_revenue") == usd("150.00")
        assert balance("inventory") == usd("720.00")

    def test_item_unit_cost_is_recorded(self, purchase, sale, transaction_selector):
        purchase("100", "8.00")
        applied = sale("10", "15.00")

        view = transaction_selector.get(applied.transaction_id)
        assert view.items[0].unit_cost == Decimal("8")

    def test_every_batch_balances(self, purchase, sale, ledger_selector):
        purchase("100", "8.00")
        sale("10", "15.00")

        assert ledger_selector.unbalanced_transactions() == []
        assert ledger_selector.trial_balance(CURRENCY).is_balanced

    def test_purchase_discount_lowers_unit_cost(
        self, coordinator, warehouse, product, product_b, balance
    ):
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.PURCHASE,
            currency=CURRENCY,
            warehouse_id=warehouse.id,
            items=(line(product.id, "10", "10.00"), line(product_b.id, "10", "20.00")),
            discount=usd("30.00"),
        )

        result = coordinator.apply(dto)

        assert result.ok, result.error
        assert coordinator.stock.moving_average_cost(product.id, warehouse.id) == Decimal("9")
        assert coordinator.stock.moving_average_cost(product_b.id, warehouse.id) == Decimal("18")
        assert balance("inventory") == usd("270.00")

    def test_sale_tax_lands_on_tax_payable(
        self, session, policy, deterministic_clock, accounts, warehouse, product, purchase, balance
    ):
        purchase("100", "8.00")
        taxed = dataclasses.replace(
            policy, tax_policies={TransactionType.SALE: TaxPolicy(Decimal("10"))}
        )
        coordinator = TransactionCoordinator(session, taxed, clock=deterministic_clock)

        result = coordinator.apply(_sale_dto(product, warehouse))

        assert result.ok, result.error
        assert result.value.totals.total_amount == usd("165.00")
        assert balance("tax_payable") == usd("15.00")
        assert balance("sales_revenue") == usd("150.00")


class TestFailureAtomicity:
    def test_insufficient_stock_leaves_nothing_behind(
        self, session, coordinator, purchase, product, warehouse, transaction_selector
    ):
        purchase("5", "8.00")
        movements = _count(session, StockMovement.id)
        batches = _count(session, JournalBatch.id)

        result = coordinator.apply(_sale_dto(product, warehouse, quantity="6"))

        assert not result.ok
        assert result.error.kind is ErrorKind.INSUFFICIENT_STOCK
        assert not result.error.retryable
        assert _count(session, StockMovement.id) == movements
        assert _count(session, JournalBatch.id) == batches
        assert transaction_selector.list_transactions(TransactionType.SALE) == []
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("5")

    def test_second_line_failure_rolls_back_first_line(
        self, session, coordinator, purchase, product, product_b, warehouse
    ):
        purchase("10", "8.00")
        purchase("1", "3.00", product_id=product_b.id)
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.SALE,
            currency=CURRENCY,
            warehouse_id=warehouse.id,
            items=(line(product.id, "4", "15.00"), line(product_b.id, "2", "5.00")),
        )

        result = coordinator.apply(dto)

        assert result.error.kind is ErrorKind.INSUFFICIENT_STOCK
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("10")

    def test_foreign_currency_rejected(self, coordinator, product, warehouse):
        result = coordinator.apply(_sale_dto(product, warehouse, price="15.00", currency="EUR"))
        assert result.error.kind is ErrorKind.CURRENCY_MISMATCH

    def test_unknown_currency_rejected(self, coordinator, product, warehouse):
        dto = dataclasses.replace(_sale_dto(product, warehouse), currency="XXQ")
        result = coordinator.apply(dto)
        assert result.error.kind is ErrorKind.VALIDATION

    def test_unknown_product_rejected(self, coordinator, warehouse):
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.SALE,
            currency=CURRENCY,
            warehouse_id=warehouse.id,
            items=(line(uuid4(), "1", "1.00"),),
        )
        result = coordinator.apply(dto)
        assert result.error.code == "PRODUCT_NOT_FOUND"

    def test_non_positive_quantity_rejected(self, coordinator, product, warehouse):
        result = coordinator.apply(_sale_dto(product, warehouse, quantity="0"))
        assert result.error.kind is ErrorKind.VALIDATION

    def test_empty_items_rejected(self, coordinator, warehouse):
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.PURCHASE,
            currency=CURRENCY,
            warehouse_id=warehouse.id,
        )
        assert coordinator.apply(dto).error.kind is ErrorKind.VALIDATION

    def test_cancellation_cannot_be_submitted(self, coordinator):
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.CANCELLATION, currency=CURRENCY
        )
        assert coordinator.apply(dto).error.kind is ErrorKind.VALIDATION

    def test_failure_is_logged(self, coordinator, product, warehouse, captured_logs):
        coordinator.apply(_sale_dto(product, warehouse))

        failures = [r for r in captured_logs() if r["message"] == "transaction_apply_failed"]
        assert failures
        assert failures[0]["error_kind"] == "insufficient_stock"
        assert failures[0]["operation"] == "apply"


class TestReverse:
    def test_cancel_restores_stock_and_balances(
        self, coordinator, purchase, sale, product, warehouse, balance, transaction_selector
    ):
        purchase("100", "8.00")
        applied = sale("10", "15.00")

        result = coordinator.reverse(applied.transaction_id)

        assert result.ok, result.error
        comp = result.value
        assert comp.transaction_type is TransactionType.CANCELLATION
        assert comp.original_status is TransactionStatus.COMPLETED
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("100")
        assert coordinator.stock.moving_average_cost(product.id, warehouse.id) == Decimal("8")
        assert balance("sales_revenue").is_zero
        assert balance("cost_of_goods_sold").is_zero
        assert balance("inventory") == usd("800.00")

        original = transaction_selector.get(applied.transaction_id)
        assert original.status is TransactionStatus.CANCELLED
        assert original.reversed_by_id == comp.compensating_transaction_id
        record = transaction_selector.get(comp.compensating_transaction_id)
        assert record.reversal_of_id == applied.transaction_id
        assert record.status is TransactionStatus.POSTED

    def test_second_reverse_is_already_reversed(self, coordinator, purchase, sale):
        purchase()
        applied = sale()
        coordinator.reverse(applied.transaction_id)

        result = coordinator.reverse(applied.transaction_id)

        assert result.error.kind is ErrorKind.ALREADY_REVERSED

    def test_original_rows_are_untouched(self, session, coordinator, purchase, sale):
        purchase()
        applied = sale()
        coordinator.reverse(applied.transaction_id)

        reversal_batches = session.execute(
            select(func.count(JournalBatch.id)).where(JournalBatch.reversal_of_id.is_not(None))
        ).scalar_one()
        assert reversal_batches == 1
        assert len(coordinator.accounts.entries_for(applied.transaction_id)) == 4

    def test_cancel_purchase_after_sale_can_overdraw(
        self, coordinator, purchase, sale, product, warehouse
    ):
        received = purchase("10", "8.00")
        sale("8", "15.00")

        result = coordinator.reverse(received.transaction_id)

        assert result.error.kind is ErrorKind.INSUFFICIENT_STOCK
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("2")

    def test_full_return_event(self, coordinator, purchase, sale, product, warehouse):
        purchase()
        applied = sale("10", "15.00")

        result = coordinator.reverse(applied.transaction_id, "return")

        assert result.value.transaction_type is TransactionType.SALE_RETURN
        assert coordinator.transactions.get(applied.transaction_id).status is TransactionStatus.RETURNED

    def test_reverse_draft_is_invalid(self, coordinator, product, warehouse, purchase):
        purchase()
        draft = coordinator.create_draft(_sale_dto(product, warehouse)).value

        result = coordinator.reverse(draft.transaction_id)

        assert result.error.kind is ErrorKind.INVALID_TRANSITION

    def test_unknown_transaction(self, coordinator):
        result = coordinator.reverse(uuid4())
        assert result.error.code == "TRANSACTION_NOT_FOUND"

    def test_applied_header_is_immutable(self, session, purchase):
        applied = purchase()
        header = session.get(BusinessTransaction, applied.transaction_id)
        header.total_amount = 1

        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestDraftsAndApproval:
    def test_draft_then_apply_by_id(self, coordinator, purchase, product, warehouse):
        purchase()
        draft = coordinator.create_draft(_sale_dto(product, warehouse)).value

        assert draft.status is TransactionStatus.DRAFT
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("100")

        applied = coordinator.apply(draft.transaction_id).value
        assert applied.status is TransactionStatus.COMPLETED
        assert applied.reference_number == draft.reference_number
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("90")

    def test_applying_twice_is_invalid(self, coordinator, purchase):
        applied = purchase()
        result = coordinator.apply(applied.transaction_id)
        assert result.error.kind is ErrorKind.INVALID_TRANSITION

    def test_approval_required_starts_pending(
        self, session, policy, deterministic_clock, accounts, warehouse, product, purchase
    ):
        purchase()
        strict = dataclasses.replace(policy, require_approval=frozenset({TransactionType.SALE}))
        coordinator = TransactionCoordinator(session, strict, clock=deterministic_clock)

        draft = coordinator.create_draft(_sale_dto(product, warehouse)).value
        assert draft.status is TransactionStatus.PENDING

        approved = coordinator.transition(draft.transaction_id, "approve").value
        assert approved.status is TransactionStatus.APPROVED
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("90")

        completed = coordinator.transition(draft.transaction_id, "complete").value
        assert completed.status is TransactionStatus.COMPLETED
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("90")

    def test_submit_then_cancel_via_transition(self, coordinator, purchase, product, warehouse):
        purchase()
        draft = coordinator.create_draft(_sale_dto(product, warehouse)).value
        coordinator.transition(draft.transaction_id, "submit")
        coordinator.transition(draft.transaction_id, "approve")

        result = coordinator.transition(draft.transaction_id, "cancel")

        assert result.value.transaction_type is TransactionType.CANCELLATION
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("100")

    def test_illegal_transition(self, coordinator, purchase, product, warehouse):
        purchase()
        draft = coordinator.create_draft(_sale_dto(product, warehouse)).value
        result = coordinator.transition(draft.transaction_id, "return")
        assert result.error.kind is ErrorKind.INVALID_TRANSITION

    def test_delete_draft(self, coordinator, purchase, product, warehouse):
        purchase()
        draft = coordinator.create_draft(_sale_dto(product, warehouse)).value

        assert coordinator.delete_draft(draft.transaction_id).ok
        assert coordinator.transactions.get(draft.transaction_id) is None

    def test_delete_applied_is_invalid(self, coordinator, purchase):
        applied = purchase()
        result = coordinator.delete_draft(applied.transaction_id)
        assert result.error.kind is ErrorKind.INVALID_TRANSITION

    def test_draft_reservation_is_consumed_on_apply(
        self, coordinator, purchase, product, warehouse, stock_selector
    ):
        purchase()
        draft = coordinator.create_draft(_sale_dto(product, warehouse), reserve=True).value
        (level,) = stock_selector.stock_levels(product.id, warehouse.id)
        assert level.available == Decimal("90")
        assert level.quantity_on_hand == Decimal("100")

        coordinator.apply(draft.transaction_id)

        (level,) = stock_selector.stock_levels(product.id, warehouse.id)
        assert level.reserved == Decimal("0")
        assert level.quantity_on_hand == Decimal("90")

    def test_reservation_beyond_available_fails(self, coordinator, purchase, product, warehouse):
        purchase("5", "8.00")
        result = coordinator.create_draft(_sale_dto(product, warehouse), reserve=True)
        assert result.error.kind is ErrorKind.INSUFFICIENT_STOCK

    def test_expire_reservations(
        self, coordinator, purchase, product, warehouse, deterministic_clock
    ):
        purchase()
        coordinator.create_draft(_sale_dto(product, warehouse), reserve=True)
        deterministic_clock.advance(901)

        assert coordinator.expire_reservations().value == 1

    def test_references_are_sequential_per_type(self, coordinator, purchase, sale):
        purchase()
        first = sale("1")
        second = sale("1")
        assert first.reference_number == "SAL-000001"
        assert second.reference_number == "SAL-000002"


class TestBankTransactions:
    def test_deposit_moves_cash_to_bank(self, coordinator, balance):
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.BANK_TRANSACTION,
            currency=CURRENCY,
            bank_kind=BankTransactionKind.DEPOSIT,
            amount=usd("100.00"),
        )

        result = coordinator.apply(dto)

        assert result.value.status is TransactionStatus.COMPLETED
        assert result.value.movements == ()
        assert balance("bank") == usd("100.00")
        assert balance("cash") == usd("-100.00")

    def test_transfer_needs_both_accounts(self, coordinator):
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.BANK_TRANSACTION,
            currency=CURRENCY,
            bank_kind=BankTransactionKind.TRANSFER,
            amount=usd("1.00"),
        )
        assert coordinator.apply(dto).error.kind is ErrorKind.VALIDATION

    def test_cancel_bank_transaction(self, coordinator, balance):
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.BANK_TRANSACTION,
            currency=CURRENCY,
            bank_kind=BankTransactionKind.WITHDRAW,
            amount=usd("40.00"),
        )
        applied = coordinator.apply(dto).value

        result = coordinator.reverse(applied.transaction_id)

        assert result.ok, result.error
        assert balance("bank").is_zero
        assert balance("cash").is_zero


class TestStockOperations:
    def test_count_adjustment_books_loss(
        self, coordinator, purchase, product, warehouse, balance
    ):
        purchase("100", "8.00")

        result = coordinator.adjust_stock(product.id, warehouse.id, Decimal("96"))

        assert result.value.movement.quantity_delta == Decimal("-4")
        assert balance("inventory_adjustment") == usd("32.00")
        assert balance("inventory") == usd("768.00")

    def test_matching_count_posts_nothing(self, coordinator, purchase, product, warehouse):
        purchase("100", "8.00")
        result = coordinator.adjust_stock(product.id, warehouse.id, "100")
        assert result.value.movement is None
        assert result.value.posting is None

    def test_transfer_keeps_inventory_value(
        self, coordinator, purchase, product, warehouse, second_warehouse, balance, stock_selector
    ):
        purchase("100", "8.00")

        result = coordinator.transfer_stock(product.id, warehouse.id, second_warehouse.id, "30")

        assert result.ok, result.error
        assert stock_selector.product_quantity(product.id) == {
            warehouse.id: Decimal("70"),
            second_warehouse.id: Decimal("30"),
        }
        assert balance("inventory") == usd("800.00")
        assert coordinator.accounts.postings_for(result.value.transaction_id) == []


class TestUnitOfWork:
    def test_events_published_after_commit(self, coordinator, event_bus, purchase):
        received = []
        event_bus.subscribe(DomainEvent, received.append)

        purchase()

        kinds = [type(e) for e in received]
        assert StockMovementPosted in kinds
        assert JournalEntriesPosted in kinds
        assert kinds[-1] is TransactionApplied

    def test_failed_call_publishes_nothing(self, coordinator, event_bus, product, warehouse):
        received = []
        event_bus.subscribe(DomainEvent, received.append)

        coordinator.apply(_sale_dto(product, warehouse))

        assert received == []

    def test_reverse_publishes_reversed_event(self, coordinator, event_bus, purchase, sale):
        purchase()
        applied = sale()
        received = []
        event_bus.subscribe(TransactionReversed, received.append)

        coordinator.reverse(applied.transaction_id)

        assert [e.transaction_id for e in received] == [applied.transaction_id]

    def test_handler_failure_does_not_undo_commit(
        self, coordinator, event_bus, purchase, product, warehouse
    ):
        def broken(event):
            raise RuntimeError("subscriber bug")

        event_bus.subscribe(TransactionApplied, broken)

        purchase("3", "8.00")

        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("3")

    def test_without_auto_commit_caller_owns_the_transaction(
        self, session, policy, deterministic_clock, event_bus, accounts, warehouse, product
    ):
        received = []
        event_bus.subscribe(DomainEvent, received.append)
        coordinator = TransactionCoordinator(
            session, policy, clock=deterministic_clock, event_bus=event_bus, auto_commit=False
        )
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.PURCHASE,
            currency=CURRENCY,
            warehouse_id=warehouse.id,
            items=(line(product.id, "10", "8.00"),),
        )

        result = coordinator.apply(dto)

        assert result.ok, result.error
        assert result.events
        assert received == []
        session.rollback()
        assert coordinator.stock.quantity_on_hand(product.id, warehouse.id) == Decimal("0")

    def test_applied_log_carries_reference(self, captured_logs, purchase):
        applied = purchase()

        records = [r for r in captured_logs() if r["message"] == "transaction_applied"]
        assert records[-1]["reference_number"] == applied.reference_number
        assert records[-1]["operation"] == "apply"

    def test_result_money_is_exact(self, purchase):
        applied = purchase("3", "0.10")
        assert applied.totals.total_amount == Money.from_minor(30, CURRENCY)

"""
Read-side stock queries: levels, availability, low stock, expiry, history
and the snapshot-versus-log reconciliation.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import select

from inventory_kernel.domain.dtos import BusinessTransactionDTO, TransactionType
from inventory_kernel.models.stock import StockLot
from tests.conftest import CURRENCY, line, usd


class TestStockLevels:
    def test_level_reports_valuation(self, purchase, stock_selector, product, warehouse):
        purchase("100", "8.00")

        (level,) = stock_selector.stock_levels(product_id=product.id)

        assert level.sku == "WIDGET-1"
        assert level.warehouse_code == "MAIN"
        assert level.quantity_on_hand == Decimal("100")
        assert level.valuation == usd("800.00")

    def test_expired_reservation_does_not_reduce_availability(
        self, coordinator, purchase, stock_selector, product, warehouse, deterministic_clock
    ):
        purchase("100", "8.00")
        coordinator.stock.reserve(product.id, warehouse.id, Decimal("30"), ttl_seconds=60)
        coordinator.session.commit()

        (level,) = stock_selector.stock_levels(product.id, warehouse.id)
        assert level.available == Decimal("70")

        deterministic_clock.advance(60)

        (level,) = stock_selector.stock_levels(product.id, warehouse.id)
        assert level.reserved == Decimal("0")
        assert level.available == Decimal("100")

    def test_filter_by_warehouse(
        self, coordinator, purchase, stock_selector, product, warehouse, second_warehouse
    ):
        purchase("10", "8.00")
        coordinator.transfer_stock(product.id, warehouse.id, second_warehouse.id, "4")

        levels = stock_selector.stock_levels(warehouse_id=second_warehouse.id)

        assert [lv.quantity_on_hand for lv in levels] == [Decimal("4")]


class TestLowStockAndExpiry:
    def test_low_stock_at_threshold(self, purchase, sale, stock_selector, product):
        purchase("10", "8.00")
        sale("5", "15.00")

        (item,) = stock_selector.low_stock()

        assert item.product_id == product.id
        assert item.quantity_on_hand == Decimal("5")
        assert item.min_stock == Decimal("5")

    def test_above_threshold_not_reported(self, purchase, stock_selector):
        purchase("10", "8.00")
        assert stock_selector.low_stock() == []

    def test_product_without_stock_is_low(self, stock_selector, product, product_b):
        items = stock_selector.low_stock()
        # product_b has no threshold
        assert [i.sku for i in items] == ["WIDGET-1"]
        assert items[0].quantity_on_hand == Decimal("0")

    def test_expired_lots(self, coordinator, stock_selector, product, warehouse):
        dto = BusinessTransactionDTO(
            transaction_type=TransactionType.PURCHASE,
            currency=CURRENCY,
            warehouse_id=warehouse.id,
            items=(
                line(product.id, "5", "8.00", batch="OLD", expiry_date=date(2023, 12, 31)),
                line(product.id, "5", "8.00", batch="NEW", expiry_date=date(2024, 6, 30)),
            ),
        )
        assert coordinator.apply(dto).ok

        assert [lv.batch for lv in stock_selector.expired_lots()] == ["OLD"]
        assert [lv.batch for lv in stock_selector.expired_lots(date(2024, 7, 1))] == [
            "NEW",
            "OLD",
        ]


class TestHistoryAndReconciliation:
    def test_movement_history_in_posting_order(
        self, coordinator, purchase, sale, stock_selector, product, deterministic_clock
    ):
        purchase("10", "8.00")
        deterministic_clock.advance(60)
        sale("3", "15.00")

        history = stock_selector.movement_history(product.id)

        assert [m.reason for m in history] == ["purchase", "sale"]
        assert history[-1].balance_after == Decimal("7")
        assert len(stock_selector.movement_history(product.id, limit=1)) == 1

    def test_movement_value_matches_inventory_account(
        self, coordinator, purchase, sale, stock_selector, account_ledger, accounts,
        product, warehouse, customer_id,
    ):
        purchase("100", "8.00")
        purchase("50", "9.10")
        sold = sale("30", "15.00", counterparty_id=customer_id)
        cancelled = sale("7", "15.00")
        coordinator.reverse(cancelled.transaction_id)
        coordinator.adjust_stock(product.id, warehouse.id, "110")

        inventory = account_ledger.balance_of(accounts["inventory"].id)

        assert sold.movements
        assert stock_selector.movement_value_total(CURRENCY) == inventory

    def test_reconcile_clean_after_activity(
        self, coordinator, purchase, sale, stock_selector
    ):
        purchase("100", "8.00")
        applied = sale("10", "15.00")
        coordinator.reverse(applied.transaction_id)

        assert stock_selector.reconcile() == []

    def test_reconcile_reports_drift(self, session, purchase, stock_selector):
        purchase("10", "8.00")
        lot = session.execute(select(StockLot)).scalar_one()
        lot.quantity_on_hand = Decimal("12")
        session.flush()

        (drift,) = stock_selector.reconcile()

        assert drift.snapshot_quantity == Decimal("12")
        assert drift.movement_quantity == Decimal("10")
        assert drift.difference == Decimal("2")

"""
Trial balance and derived balances.

Nothing is stored on the accounts; every figure here is summed from
journal entries at query time.
"""

from uuid import uuid4

from inventory_kernel.domain.dtos import LedgerLine
from inventory_kernel.models.account import AccountType
from tests.conftest import CURRENCY, usd


class TestTrialBalance:
    def test_empty_ledger_is_balanced(self, ledger_selector, accounts):
        tb = ledger_selector.trial_balance(CURRENCY)
        assert tb.rows == ()
        assert tb.is_balanced

    def test_balanced_after_mixed_activity(
        self, coordinator, purchase, sale, ledger_selector, customer_id, product
    ):
        purchase("100", "8.00")
        sold = sale("10", "15.00", counterparty_id=customer_id)
        coordinator.record_payment(sold.transaction_id, usd("40.00"))
        coordinator.adjust_stock(product.id, sold.movements[0].warehouse_id, "85")

        tb = ledger_selector.trial_balance(CURRENCY)

        assert tb.is_balanced
        assert tb.total_debits == tb.total_credits
        assert tb.row_for("1300").balance == usd("680.00")
        assert tb.row_for("1200").balance == usd("110.00")
        assert tb.row_for("9999") is None

    def test_rows_ordered_by_code(self, purchase, sale, ledger_selector):
        purchase()
        sale()
        codes = [row.account_code for row in ledger_selector.trial_balance(CURRENCY).rows]
        assert codes == sorted(codes)

    def test_as_of_cutoff(self, account_ledger, accounts, ledger_selector, deterministic_clock):
        lines = [
            LedgerLine.dr(accounts["cash"].id, usd("10.00")),
            LedgerLine.cr(accounts["sales_revenue"].id, usd("10.00")),
        ]
        account_ledger.post(uuid4(), lines)
        cutoff = deterministic_clock.now()
        deterministic_clock.advance(60)
        account_ledger.post(uuid4(), lines)

        tb = ledger_selector.trial_balance(CURRENCY, as_of=cutoff)

        assert tb.row_for("1000").debit_total == usd("10.00")


class TestDerivedBalances:
    def test_accounting_equation(
        self, coordinator, purchase, sale, ledger_selector, supplier_id, product, warehouse
    ):
        purchase("100", "8.00", counterparty_id=supplier_id)
        sale("25", "15.00")
        coordinator.adjust_stock(product.id, warehouse.id, "74")

        by_type = ledger_selector.balances_by_type(CURRENCY)

        assets = by_type[AccountType.ASSET]
        claims = (
            by_type[AccountType.LIABILITY]
            + by_type[AccountType.EQUITY]
            + by_type[AccountType.INCOME]
            - by_type[AccountType.EXPENSE]
        )
        assert assets == claims

    def test_balances_by_code(self, purchase, ledger_selector):
        purchase("10", "8.00")
        balances = ledger_selector.balances_by_code(CURRENCY)
        assert balances == {"1000": usd("-80.00"), "1300": usd("80.00")}

    def test_transaction_totals(self, purchase, sale, ledger_selector):
        purchase()
        applied = sale()

        debits, credits = ledger_selector.transaction_totals(applied.transaction_id)

        assert debits == credits == 23000
        assert ledger_selector.unbalanced_transactions() == []

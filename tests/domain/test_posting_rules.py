"""
Posting rules: each builder yields a balanced line set on the right roles.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from inventory_kernel.domain.dtos import LineItemDTO, LineSide
from inventory_kernel.domain.money import Money
from inventory_kernel.domain.posting_rules import (
    AccountRoles,
    Role,
    adjustment_lines,
    bank_transaction_lines,
    expense_lines,
    opening_balance_lines,
    payment_lines,
    purchase_lines,
    purchase_return_lines,
    sale_lines,
    sale_return_lines,
)
from inventory_kernel.domain.pricing import TaxPolicy, compute_totals, price_lines
from inventory_kernel.exceptions import AccountNotFoundError


def _usd(amount: str) -> Money:
    return Money.of(amount, "USD")


@pytest.fixture
def roles():
    return AccountRoles({role: uuid4() for role in Role.ALL})


@pytest.fixture
def totals():
    """10 @ 15.00, 10% tax, 5.00 discount: 150.00 + 15.00 - 5.00 = 160.00"""
    items = [LineItemDTO(uuid4(), Decimal("10"), _usd("15.00"))]
    return compute_totals(
        price_lines(items, "USD"), "USD", TaxPolicy(Decimal("10")), discount=_usd("5.00")
    )


def _balanced(lines):
    debits = Money.sum((l.debit for l in lines), "USD")
    credits = Money.sum((l.credit for l in lines), "USD")
    return debits == credits


def _amount(lines, account_id, side):
    return Money.sum(
        (l.amount for l in lines if l.account_id == account_id and l.side is side), "USD"
    )


class TestSaleLines:
    def test_cash_sale(self, roles, totals):
        lines = sale_lines(totals, _usd("80.00"), roles, on_credit=False)
        assert _balanced(lines)
        assert _amount(lines, roles[Role.CASH], LineSide.DEBIT) == _usd("160.00")
        assert _amount(lines, roles[Role.SALES_REVENUE], LineSide.CREDIT) == _usd("145.00")
        assert _amount(lines, roles[Role.TAX_PAYABLE], LineSide.CREDIT) == _usd("15.00")
        assert _amount(lines, roles[Role.COST_OF_GOODS_SOLD], LineSide.DEBIT) == _usd("80.00")
        assert _amount(lines, roles[Role.INVENTORY], LineSide.CREDIT) == _usd("80.00")

    def test_credit_sale_debits_receivable(self, roles, totals):
        lines = sale_lines(totals, _usd("80.00"), roles, on_credit=True)
        assert _amount(lines, roles[Role.ACCOUNTS_RECEIVABLE], LineSide.DEBIT) == _usd("160.00")
        assert _amount(lines, roles[Role.CASH], LineSide.DEBIT).is_zero

    def test_zero_cost_lines_are_dropped(self, roles, totals):
        lines = sale_lines(totals, Money.zero("USD"), roles, on_credit=False)
        assert all(not l.amount.is_zero for l in lines)
        assert _balanced(lines)


class TestPurchaseLines:
    def test_inventory_at_net_of_discount(self, roles, totals):
        lines = purchase_lines(totals, roles, on_credit=True)
        assert _balanced(lines)
        assert _amount(lines, roles[Role.INVENTORY], LineSide.DEBIT) == _usd("145.00")
        assert _amount(lines, roles[Role.TAX_RECEIVABLE], LineSide.DEBIT) == _usd("15.00")
        assert _amount(lines, roles[Role.ACCOUNTS_PAYABLE], LineSide.CREDIT) == _usd("160.00")


class TestReturnLines:
    def test_sale_return_mirrors_sale(self, roles, totals):
        lines = sale_return_lines(totals, _usd("80.00"), roles, on_credit=False)
        assert _balanced(lines)
        assert _amount(lines, roles[Role.SALES_RETURNS], LineSide.DEBIT) == _usd("145.00")
        assert _amount(lines, roles[Role.INVENTORY], LineSide.DEBIT) == _usd("80.00")
        assert _amount(lines, roles[Role.CASH], LineSide.CREDIT) == _usd("160.00")

    def test_purchase_return_credits_inventory(self, roles, totals):
        lines = purchase_return_lines(totals, roles, on_credit=True)
        assert _balanced(lines)
        assert _amount(lines, roles[Role.INVENTORY], LineSide.CREDIT) == _usd("145.00")
        assert _amount(lines, roles[Role.ACCOUNTS_PAYABLE], LineSide.DEBIT) == _usd("160.00")


class TestOtherRules:
    def test_bank_transfer(self):
        source, target = uuid4(), uuid4()
        lines = bank_transaction_lines(_usd("50.00"), source, target)
        assert _balanced(lines)
        assert _amount(lines, target, LineSide.DEBIT) == _usd("50.00")
        assert _amount(lines, source, LineSide.CREDIT) == _usd("50.00")

    @pytest.mark.parametrize(
        "kind, debit_role, credit_role",
        [
            ("sale", Role.BANK, Role.ACCOUNTS_RECEIVABLE),
            ("purchase", Role.ACCOUNTS_PAYABLE, Role.BANK),
            ("sale_return", Role.ACCOUNTS_RECEIVABLE, Role.BANK),
            ("purchase_return", Role.BANK, Role.ACCOUNTS_PAYABLE),
        ],
    )
    def test_payment_directions(self, roles, kind, debit_role, credit_role):
        lines = payment_lines(kind, _usd("10.00"), "bank", roles)
        assert _amount(lines, roles[debit_role], LineSide.DEBIT) == _usd("10.00")
        assert _amount(lines, roles[credit_role], LineSide.CREDIT) == _usd("10.00")

    def test_cash_payment_settles_through_cash(self, roles):
        lines = payment_lines("sale", _usd("10.00"), "cash", roles)
        assert _amount(lines, roles[Role.CASH], LineSide.DEBIT) == _usd("10.00")

    def test_payment_for_bank_transaction_rejected(self, roles):
        with pytest.raises(ValueError):
            payment_lines("bank_transaction", _usd("1.00"), "cash", roles)

    def test_adjustment_loss(self, roles):
        lines = adjustment_lines(_usd("16.00"), roles, increase=False)
        assert _amount(lines, roles[Role.INVENTORY_ADJUSTMENT], LineSide.DEBIT) == _usd("16.00")
        assert _amount(lines, roles[Role.INVENTORY], LineSide.CREDIT) == _usd("16.00")

    def test_expense_paid_from_bank(self, roles):
        lines = expense_lines(_usd("42.00"), roles[Role.EXPENSES], "bank", roles)
        assert _balanced(lines)
        assert _amount(lines, roles[Role.EXPENSES], LineSide.DEBIT) == _usd("42.00")
        assert _amount(lines, roles[Role.BANK], LineSide.CREDIT) == _usd("42.00")

    def test_opening_balance_on_credit_normal_account(self, roles):
        account = uuid4()
        lines = opening_balance_lines(account, _usd("500.00"), roles, debit_normal=False)
        assert _amount(lines, account, LineSide.CREDIT) == _usd("500.00")
        assert _amount(lines, roles[Role.OPENING_BALANCE_EQUITY], LineSide.DEBIT) == _usd("500.00")

    def test_unbound_role_raises(self):
        with pytest.raises(AccountNotFoundError):
            AccountRoles({})[Role.CASH]

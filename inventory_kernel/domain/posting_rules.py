"""
Posting rules -- balanced journal line sets per transaction type.

Pure builders.  Accounts are referenced by role (``cash``, ``inventory``,
...); AccountRoles maps each role to the account id bound to it in
configuration.  Zero-amount lines are omitted.  Every builder returns a set
whose debits equal its credits by construction; AccountLedger.post checks
again before anything is written.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from uuid import UUID

from inventory_kernel.domain.dtos import LedgerLine, TransactionTotals
from inventory_kernel.domain.money import Money
from inventory_kernel.exceptions import AccountNotFoundError


class Role:
    CASH = "cash"
    BANK = "bank"
    ACCOUNTS_RECEIVABLE = "accounts_receivable"
    INVENTORY = "inventory"
    TAX_RECEIVABLE = "tax_receivable"
    ACCOUNTS_PAYABLE = "accounts_payable"
    TAX_PAYABLE = "tax_payable"
    OPENING_BALANCE_EQUITY = "opening_balance_equity"
    SALES_REVENUE = "sales_revenue"
    SALES_RETURNS = "sales_returns"
    COST_OF_GOODS_SOLD = "cost_of_goods_sold"
    INVENTORY_ADJUSTMENT = "inventory_adjustment"
    EXPENSES = "expenses"

    ALL = (
        CASH,
        BANK,
        ACCOUNTS_RECEIVABLE,
        INVENTORY,
        TAX_RECEIVABLE,
        ACCOUNTS_PAYABLE,
        TAX_PAYABLE,
        OPENING_BALANCE_EQUITY,
        SALES_REVENUE,
        SALES_RETURNS,
        COST_OF_GOODS_SOLD,
        INVENTORY_ADJUSTMENT,
        EXPENSES,
    )


@dataclass(frozen=True)
class AccountRoles:
    accounts: Mapping[str, UUID]

    def __getitem__(self, role: str) -> UUID:
        try:
            return self.accounts[role]
        except KeyError:
            raise AccountNotFoundError(f"role:{role}", "is not bound") from None

    def settlement(self, method: str) -> UUID:
        """Cash or bank account for a payment method."""
        return self[Role.BANK if method == "bank" else Role.CASH]


def _keep(lines: list[LedgerLine]) -> list[LedgerLine]:
    return [line for line in lines if not line.amount.is_zero]


def sale_lines(
    totals: TransactionTotals,
    cost: Money,
    roles: AccountRoles,
    *,
    on_credit: bool,
) -> list[LedgerLine]:
    receivable = roles[Role.ACCOUNTS_RECEIVABLE] if on_credit else roles[Role.CASH]
    return _keep(
        [
            LedgerLine.dr(receivable, totals.total_amount, "sale total"),
            LedgerLine.cr(roles[Role.SALES_REVENUE], totals.net_of_discount, "sales revenue"),
            LedgerLine.cr(roles[Role.TAX_PAYABLE], totals.tax_amount, "output tax"),
            LedgerLine.dr(roles[Role.COST_OF_GOODS_SOLD], cost, "cost of goods sold"),
            LedgerLine.cr(roles[Role.INVENTORY], cost, "inventory issued"),
        ]
    )


def purchase_lines(
    totals: TransactionTotals,
    roles: AccountRoles,
    *,
    on_credit: bool,
) -> list[LedgerLine]:
    payable = roles[Role.ACCOUNTS_PAYABLE] if on_credit else roles[Role.CASH]
    return _keep(
        [
            LedgerLine.dr(roles[Role.INVENTORY], totals.net_of_discount, "inventory received"),
            LedgerLine.dr(roles[Role.TAX_RECEIVABLE], totals.tax_amount, "input tax"),
            LedgerLine.cr(payable, totals.total_amount, "purchase total"),
        ]
    )


def sale_return_lines(
    totals: TransactionTotals,
    cost: Money,
    roles: AccountRoles,
    *,
    on_credit: bool,
) -> list[LedgerLine]:
    receivable = roles[Role.ACCOUNTS_RECEIVABLE] if on_credit else roles[Role.CASH]
    return _keep(
        [
            LedgerLine.dr(roles[Role.SALES_RETURNS], totals.net_of_discount, "sales returns"),
            LedgerLine.dr(roles[Role.TAX_PAYABLE], totals.tax_amount, "output tax reversed"),
            LedgerLine.cr(receivable, totals.total_amount, "return total"),
            LedgerLine.dr(roles[Role.INVENTORY], cost, "inventory returned"),
            LedgerLine.cr(roles[Role.COST_OF_GOODS_SOLD], cost, "cost of goods returned"),
        ]
    )


def purchase_return_lines(
    totals: TransactionTotals,
    roles: AccountRoles,
    *,
    on_credit: bool,
) -> list[LedgerLine]:
    payable = roles[Role.ACCOUNTS_PAYABLE] if on_credit else roles[Role.CASH]
    return _keep(
        [
            LedgerLine.dr(payable, totals.total_amount, "return total"),
            LedgerLine.cr(roles[Role.INVENTORY], totals.net_of_discount, "inventory returned"),
            LedgerLine.cr(roles[Role.TAX_RECEIVABLE], totals.tax_amount, "input tax reversed"),
        ]
    )


def bank_transaction_lines(
    amount: Money, from_account_id: UUID, to_account_id: UUID
) -> list[LedgerLine]:
    return [
        LedgerLine.dr(to_account_id, amount, "funds in"),
        LedgerLine.cr(from_account_id, amount, "funds out"),
    ]


def payment_lines(
    transaction_type: str,
    amount: Money,
    method: str,
    roles: AccountRoles,
) -> list[LedgerLine]:
    """
    Settlement of an applied transaction.

    Sales are collected, purchases paid, and the return types refunded in
    the opposite direction.
    """
    settle = roles.settlement(method)
    if transaction_type == "sale":
        return [
            LedgerLine.dr(settle, amount, "payment received"),
            LedgerLine.cr(roles[Role.ACCOUNTS_RECEIVABLE], amount, "receivable settled"),
        ]
    if transaction_type == "purchase":
        return [
            LedgerLine.dr(roles[Role.ACCOUNTS_PAYABLE], amount, "payable settled"),
            LedgerLine.cr(settle, amount, "payment made"),
        ]
    if transaction_type == "sale_return":
        return [
            LedgerLine.dr(roles[Role.ACCOUNTS_RECEIVABLE], amount, "refund issued"),
            LedgerLine.cr(settle, amount, "refund paid"),
        ]
    if transaction_type == "purchase_return":
        return [
            LedgerLine.dr(settle, amount, "refund received"),
            LedgerLine.cr(roles[Role.ACCOUNTS_PAYABLE], amount, "supplier refund"),
        ]
    raise ValueError(f"No payment rule for {transaction_type}")


def expense_lines(
    amount: Money, expense_account_id: UUID, method: str, roles: AccountRoles
) -> list[LedgerLine]:
    """Expense paid out of cash or bank."""
    return [
        LedgerLine.dr(expense_account_id, amount, "expense"),
        LedgerLine.cr(roles.settlement(method), amount, "expense paid"),
    ]


def adjustment_lines(value: Money, roles: AccountRoles, *, increase: bool) -> list[LedgerLine]:
    inventory = roles[Role.INVENTORY]
    adjustment = roles[Role.INVENTORY_ADJUSTMENT]
    if increase:
        lines = [
            LedgerLine.dr(inventory, value, "stock count gain"),
            LedgerLine.cr(adjustment, value, "stock count gain"),
        ]
    else:
        lines = [
            LedgerLine.dr(adjustment, value, "stock count loss"),
            LedgerLine.cr(inventory, value, "stock count loss"),
        ]
    return _keep(lines)


def opening_balance_lines(
    account_id: UUID,
    amount: Money,
    roles: AccountRoles,
    *,
    debit_normal: bool,
) -> list[LedgerLine]:
    """
    Opening balance against the opening-balance equity account.

    A positive amount lands on the account's normal side; a negative amount
    on the other.
    """
    equity = roles[Role.OPENING_BALANCE_EQUITY]
    on_debit = debit_normal == amount.is_positive
    value = amount if amount.is_positive else amount.negate()
    if on_debit:
        return _keep([LedgerLine.dr(account_id, value), LedgerLine.cr(equity, value)])
    return _keep([LedgerLine.cr(account_id, value), LedgerLine.dr(equity, value)])

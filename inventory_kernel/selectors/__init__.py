"""Selectors for the inventory kernel (read side)."""

from inventory_kernel.selectors.ledger_selector import (
    LedgerSelector,
    TrialBalance,
    TrialBalanceRow,
)
from inventory_kernel.selectors.reference_selector import (
    AccountRef,
    ProductRef,
    ReferenceSelector,
    WarehouseRef,
)
from inventory_kernel.selectors.stock_selector import (
    LotDrift,
    LowStockItem,
    StockLevel,
    StockSelector,
)
from inventory_kernel.selectors.transaction_selector import (
    PaymentSummary,
    PaymentView,
    TransactionSelector,
    TransactionView,
)

__all__ = [
    "AccountRef",
    "LedgerSelector",
    "LotDrift",
    "LowStockItem",
    "PaymentSummary",
    "PaymentView",
    "ProductRef",
    "ReferenceSelector",
    "StockLevel",
    "StockSelector",
    "TransactionSelector",
    "TransactionView",
    "TrialBalance",
    "TrialBalanceRow",
    "WarehouseRef",
]

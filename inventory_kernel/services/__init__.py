"""Services for the inventory kernel (write side)."""

from inventory_kernel.services.account_ledger import AccountLedger
from inventory_kernel.services.retry import RetryPolicy, run_with_retry
from inventory_kernel.services.sequence_service import SequenceService
from inventory_kernel.services.stock_ledger import StockLedger
from inventory_kernel.services.transaction_coordinator import TransactionCoordinator

__all__ = [
    "AccountLedger",
    "RetryPolicy",
    "SequenceService",
    "StockLedger",
    "TransactionCoordinator",
    "run_with_retry",
]

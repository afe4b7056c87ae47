"""
Kernel policy -- the runtime settings the services read.

The kernel never reads configuration files.  inventory_config builds a
KernelPolicy (inventory_config.bridges) and callers pass it in.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from inventory_kernel.domain.dtos import TransactionType
from inventory_kernel.domain.posting_rules import Role
from inventory_kernel.domain.pricing import TaxPolicy

DEFAULT_ROLE_CODES: Mapping[str, str] = {
    Role.CASH: "1000",
    Role.BANK: "1100",
    Role.ACCOUNTS_RECEIVABLE: "1200",
    Role.INVENTORY: "1300",
    Role.TAX_RECEIVABLE: "1400",
    Role.ACCOUNTS_PAYABLE: "2000",
    Role.TAX_PAYABLE: "2100",
    Role.OPENING_BALANCE_EQUITY: "3000",
    Role.SALES_REVENUE: "4000",
    Role.SALES_RETURNS: "4100",
    Role.COST_OF_GOODS_SOLD: "5000",
    Role.INVENTORY_ADJUSTMENT: "5100",
    Role.EXPENSES: "5200",
}

# Returns are priced with the policy of the transaction they return
_PRICING_TYPE = {
    TransactionType.SALE_RETURN: TransactionType.SALE,
    TransactionType.PURCHASE_RETURN: TransactionType.PURCHASE,
}


@dataclass(frozen=True)
class KernelPolicy:
    currency: str = "USD"
    allow_negative_stock: bool = False
    reservation_ttl_seconds: int = 900
    tax_policies: Mapping[TransactionType, TaxPolicy] = field(default_factory=dict)
    require_approval: frozenset[TransactionType] = frozenset()
    role_codes: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_ROLE_CODES)
    )

    def __post_init__(self) -> None:
        if self.reservation_ttl_seconds <= 0:
            raise ValueError("reservation_ttl_seconds must be positive")

    def tax_policy(self, transaction_type: str) -> TaxPolicy:
        kind = TransactionType(transaction_type)
        kind = _PRICING_TYPE.get(kind, kind)
        return self.tax_policies.get(kind, TaxPolicy())

    def requires_approval(self, transaction_type: str) -> bool:
        return TransactionType(transaction_type) in self.require_approval

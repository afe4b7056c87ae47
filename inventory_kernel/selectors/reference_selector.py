"""
ReferenceSelector -- product, warehouse and chart-of-accounts lookups.

The coordinator resolves every id a transaction references through this
selector before touching the ledgers, so a missing or inactive reference
fails validation before anything is locked or written.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select

from inventory_kernel.models.account import AccountType, LedgerAccount
from inventory_kernel.models.product import Product, Warehouse
from inventory_kernel.exceptions import (
    AccountNotFoundError,
    ProductNotFoundError,
    WarehouseNotFoundError,
)
from inventory_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class ProductRef:
    id: UUID
    sku: str
    name: str
    unit: str
    currency: str
    is_active: bool


@dataclass(frozen=True)
class WarehouseRef:
    id: UUID
    code: str
    name: str
    is_active: bool


@dataclass(frozen=True)
class AccountRef:
    id: UUID
    code: str
    name: str
    account_type: str
    currency: str
    is_active: bool

    @property
    def is_debit_normal(self) -> bool:
        return self.account_type in ("asset", "expense")


class ReferenceSelector(BaseSelector):
    def get_product(self, product_id: UUID) -> ProductRef | None:
        product = self.session.get(Product, product_id)
        if product is None:
            return None
        return ProductRef(
            id=product.id,
            sku=product.sku,
            name=product.name,
            unit=product.unit,
            currency=product.currency,
            is_active=product.is_active,
        )

    def require_product(self, product_id: UUID) -> ProductRef:
        """Active product, else ProductNotFoundError."""
        product = self.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        if not product.is_active:
            raise ProductNotFoundError(product_id, "is inactive")
        return product

    def get_warehouse(self, warehouse_id: UUID) -> WarehouseRef | None:
        warehouse = self.session.get(Warehouse, warehouse_id)
        if warehouse is None:
            return None
        return WarehouseRef(
            id=warehouse.id,
            code=warehouse.code,
            name=warehouse.name,
            is_active=warehouse.is_active,
        )

    def require_warehouse(self, warehouse_id: UUID | None) -> WarehouseRef:
        if warehouse_id is None:
            raise WarehouseNotFoundError("<none>", "is required")
        warehouse = self.get_warehouse(warehouse_id)
        if warehouse is None:
            raise WarehouseNotFoundError(warehouse_id)
        if not warehouse.is_active:
            raise WarehouseNotFoundError(warehouse_id, "is inactive")
        return warehouse

    def get_account(self, account_id: UUID) -> AccountRef | None:
        return self._account_ref(self.session.get(LedgerAccount, account_id))

    def get_account_by_code(self, code: str) -> AccountRef | None:
        account = self.session.execute(
            select(LedgerAccount).where(LedgerAccount.code == code)
        ).scalar_one_or_none()
        return self._account_ref(account)

    def require_account(self, account_id: UUID) -> AccountRef:
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        if not account.is_active:
            raise AccountNotFoundError(account_id, "is inactive")
        return account

    def accounts_by_codes(self, codes: list[str]) -> dict[str, AccountRef]:
        rows = self.session.execute(
            select(LedgerAccount).where(LedgerAccount.code.in_(codes))
        ).scalars()
        return {row.code: self._account_ref(row) for row in rows}

    @staticmethod
    def _account_ref(account: LedgerAccount | None) -> AccountRef | None:
        if account is None:
            return None
        return AccountRef(
            id=account.id,
            code=account.code,
            name=account.name,
            account_type=AccountType(account.account_type).value,
            currency=account.currency,
            is_active=account.is_active,
        )

"""
Module: inventory_kernel.models.product
Responsibility: Catalog reference rows the kernel reads: products and
    warehouses.  Catalog management itself lives outside the kernel.
Invariants enforced:
    - sku and warehouse code are unique.
    - A product referenced by any stock movement is never deleted
      (db/immutability.py); set is_active=False instead.
"""

from decimal import Decimal

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import TrackedBase
from inventory_kernel.db.types import CurrencyCode, MinorUnits, Quantity


class Warehouse(TrackedBase):
    __tablename__ = "warehouses"

    __table_args__ = (UniqueConstraint("code", name="uq_warehouse_code"),)

    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Warehouse {self.code}>"


class Product(TrackedBase):
    """
    Product catalog entry.

    ``price`` and ``cost_price`` are reference values in minor units.  The
    cost actually booked for stock comes from the StockLedger's moving
    average, never from cost_price.
    """

    __tablename__ = "products"

    __table_args__ = (
        UniqueConstraint("sku", name="uq_product_sku"),
        Index("idx_product_active", "is_active"),
    )

    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    price: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)
    cost_price: Mapped[MinorUnits] = mapped_column(default=0, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(default="USD", nullable=False)

    # Low-stock threshold across all warehouses
    min_stock: Mapped[Quantity] = mapped_column(default=Decimal("0"), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Product {self.sku}>"

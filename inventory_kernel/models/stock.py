"""
Module: inventory_kernel.models.stock
Responsibility: Persistence for the StockLedger: lot snapshots, the
    append-only movement log, and TTL reservations.
Invariants enforced:
    - One StockLot per (product, warehouse, batch).  Unbatched stock uses
      batch "".
    - StockLot.quantity_on_hand equals the sum of its movements'
      quantity_delta.  It changes only in the same flush that appends the
      movement, under a row lock, and the version column rejects stale
      writers.
    - StockMovement rows are never updated or deleted.  A reversal is a new
      movement whose reversal_of_id is unique, so a movement is reversed at
      most once.
    - Reserved quantity is never stored on the lot.  It is the sum of
      active, unexpired StockReservation rows.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import TrackedBase, UUIDString
from inventory_kernel.db.types import CurrencyCode, MinorUnits, Quantity, UnitCost


class MovementReason(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    RETURN_IN = "return_in"
    RETURN_OUT = "return_out"
    ADJUSTMENT = "adjustment"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"

    @property
    def reversal(self) -> str:
        return f"{self.value}_reversal"


REVERSAL_SUFFIX = "_reversal"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    RELEASED = "released"
    EXPIRED = "expired"


class StockLot(TrackedBase):
    __tablename__ = "stock_lots"

    __table_args__ = (
        UniqueConstraint(
            "product_id", "warehouse_id", "batch", name="uq_stock_lot_key"
        ),
        Index("idx_stock_lot_product", "product_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=False
    )
    warehouse_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("warehouses.id"), nullable=False
    )
    batch: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    quantity_on_hand: Mapped[Quantity] = mapped_column(
        default=Decimal("0"), nullable=False
    )
    moving_average_cost: Mapped[UnitCost] = mapped_column(
        default=Decimal("0"), nullable=False
    )
    currency: Mapped[CurrencyCode] = mapped_column(nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<StockLot {self.product_id}@{self.warehouse_id}"
            f"[{self.batch}] qty={self.quantity_on_hand}>"
        )


class StockMovement(TrackedBase):
    """
    One signed quantity change of a lot.

    ``unit_cost`` is the per-unit cost the movement was booked at: the
    incoming cost for inbound movements, the moving average (or the explicit
    removal cost) for outbound ones.  ``value`` is the costed value in minor
    units; a reversal carries the original value back exactly.  ``balance_after`` and
    ``average_cost_after`` snapshot the lot after this movement so the log
    can be replayed and checked without recomputation.
    """

    __tablename__ = "stock_movements"

    __table_args__ = (
        UniqueConstraint("reversal_of_id", name="uq_stock_movement_reversal"),
        Index("idx_stock_movement_lot", "product_id", "warehouse_id", "batch"),
        Index("idx_stock_movement_txn", "reference_transaction_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=False
    )
    warehouse_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("warehouses.id"), nullable=False
    )
    batch: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    quantity_delta: Mapped[Quantity] = mapped_column(nullable=False)
    unit_cost: Mapped[UnitCost] = mapped_column(nullable=False)
    # Costed value of the movement in minor units, always non-negative
    value: Mapped[MinorUnits] = mapped_column(nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(40), nullable=False)
    reference_transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False
    )
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("stock_movements.id"), nullable=True
    )
    balance_after: Mapped[Quantity] = mapped_column(nullable=False)
    average_cost_after: Mapped[UnitCost] = mapped_column(nullable=False)
    posted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of_id is not None

    def __repr__(self) -> str:
        return f"<StockMovement {self.reason} {self.quantity_delta:+}>"


class StockReservation(TrackedBase):
    __tablename__ = "stock_reservations"

    __table_args__ = (
        Index("idx_reservation_lot", "product_id", "warehouse_id", "batch"),
        Index("idx_reservation_txn", "transaction_id"),
        Index("idx_reservation_status_expiry", "status", "expires_at"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=False
    )
    warehouse_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("warehouses.id"), nullable=False
    )
    batch: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    quantity: Mapped[Quantity] = mapped_column(nullable=False)
    transaction_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    status: Mapped[ReservationStatus] = mapped_column(
        String(20), default=ReservationStatus.ACTIVE.value, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

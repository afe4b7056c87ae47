"""
Module: inventory_kernel.selectors.stock_selector
Responsibility: Read-only stock queries: levels per lot, product totals,
    low-stock and expired-lot alerts, movement history, and the
    reconciliation of lot snapshots against the movement log.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ value types and selectors/base.py.

Reconciliation:
    StockLot.quantity_on_hand is a snapshot maintained by StockLedger.  The
    movement log is the source of truth.  ``reconcile()`` reports every lot
    whose snapshot differs from the sum of its movement deltas; an empty
    list means the two agree.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import MovementRecord
from inventory_kernel.domain.money import Money
from inventory_kernel.models.product import Product, Warehouse
from inventory_kernel.models.stock import (
    ReservationStatus,
    StockLot,
    StockMovement,
    StockReservation,
)
from inventory_kernel.selectors.base import BaseSelector

QUANTITY_QUANTUM = Decimal("0.000000001")


def _q(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(QUANTITY_QUANTUM)


@dataclass(frozen=True)
class StockLevel:
    product_id: UUID
    sku: str
    warehouse_id: UUID
    warehouse_code: str
    batch: str
    expiry_date: date | None
    quantity_on_hand: Decimal
    reserved: Decimal
    moving_average_cost: Decimal
    valuation: Money

    @property
    def available(self) -> Decimal:
        return self.quantity_on_hand - self.reserved


@dataclass(frozen=True)
class LowStockItem:
    product_id: UUID
    sku: str
    name: str
    quantity_on_hand: Decimal
    min_stock: Decimal


@dataclass(frozen=True)
class LotDrift:
    product_id: UUID
    warehouse_id: UUID
    batch: str
    snapshot_quantity: Decimal
    movement_quantity: Decimal

    @property
    def difference(self) -> Decimal:
        return self.snapshot_quantity - self.movement_quantity


class StockSelector(BaseSelector):
    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self.clock = clock or SystemClock()

    def _reserved_by_lot(self) -> dict[tuple[UUID, UUID, str], Decimal]:
        rows = self.session.execute(
            select(
                StockReservation.product_id,
                StockReservation.warehouse_id,
                StockReservation.batch,
                func.sum(StockReservation.quantity),
            )
            .where(
                StockReservation.status == ReservationStatus.ACTIVE.value,
                StockReservation.expires_at > self.clock.now(),
            )
            .group_by(
                StockReservation.product_id,
                StockReservation.warehouse_id,
                StockReservation.batch,
            )
        ).all()
        return {(p, w, b): _q(qty) for p, w, b, qty in rows}

    def stock_levels(
        self,
        product_id: UUID | None = None,
        warehouse_id: UUID | None = None,
    ) -> list[StockLevel]:
        query = (
            select(StockLot, Product.sku, Warehouse.code)
            .join(Product, StockLot.product_id == Product.id)
            .join(Warehouse, StockLot.warehouse_id == Warehouse.id)
            .order_by(Product.sku, Warehouse.code, StockLot.batch)
        )
        if product_id is not None:
            query = query.where(StockLot.product_id == product_id)
        if warehouse_id is not None:
            query = query.where(StockLot.warehouse_id == warehouse_id)

        reserved = self._reserved_by_lot()
        levels = []
        for lot, sku, warehouse_code in self.session.execute(query).all():
            on_hand = _q(lot.quantity_on_hand)
            avg = Decimal(lot.moving_average_cost)
            levels.append(
                StockLevel(
                    product_id=lot.product_id,
                    sku=sku,
                    warehouse_id=lot.warehouse_id,
                    warehouse_code=warehouse_code,
                    batch=lot.batch,
                    expiry_date=lot.expiry_date,
                    quantity_on_hand=on_hand,
                    reserved=reserved.get(
                        (lot.product_id, lot.warehouse_id, lot.batch), Decimal("0")
                    ),
                    moving_average_cost=avg,
                    valuation=Money.from_decimal(on_hand * avg, lot.currency),
                )
            )
        return levels

    def product_quantity(self, product_id: UUID) -> dict[UUID, Decimal]:
        """On-hand quantity of a product per warehouse."""
        rows = self.session.execute(
            select(StockLot.warehouse_id, func.sum(StockLot.quantity_on_hand))
            .where(StockLot.product_id == product_id)
            .group_by(StockLot.warehouse_id)
        ).all()
        return {warehouse_id: _q(qty) for warehouse_id, qty in rows}

    def low_stock(self, warehouse_id: UUID | None = None) -> list[LowStockItem]:
        """
        Active products whose total on-hand is at or below min_stock.

        Products with a zero threshold are never reported.  Products with no
        lot at all count as zero on hand.
        """
        totals = select(
            StockLot.product_id.label("product_id"),
            func.sum(StockLot.quantity_on_hand).label("on_hand"),
        )
        if warehouse_id is not None:
            totals = totals.where(StockLot.warehouse_id == warehouse_id)
        totals = totals.group_by(StockLot.product_id).subquery()

        rows = self.session.execute(
            select(Product, totals.c.on_hand)
            .outerjoin(totals, totals.c.product_id == Product.id)
            .where(Product.is_active.is_(True), Product.min_stock > 0)
            .order_by(Product.sku)
        ).all()
        items = []
        for product, on_hand in rows:
            quantity = _q(on_hand)
            min_stock = _q(product.min_stock)
            if quantity <= min_stock:
                items.append(
                    LowStockItem(
                        product_id=product.id,
                        sku=product.sku,
                        name=product.name,
                        quantity_on_hand=quantity,
                        min_stock=min_stock,
                    )
                )
        return items

    def expired_lots(self, as_of: date | None = None) -> list[StockLevel]:
        """Lots still holding stock whose expiry date is before ``as_of``."""
        as_of = as_of or self.clock.today()
        return [
            level
            for level in self.stock_levels()
            if level.expiry_date is not None
            and level.expiry_date < as_of
            and level.quantity_on_hand > 0
        ]

    def movement_history(
        self,
        product_id: UUID,
        warehouse_id: UUID | None = None,
        limit: int | None = None,
    ) -> list[MovementRecord]:
        query = (
            select(StockMovement)
            .where(StockMovement.product_id == product_id)
            .order_by(StockMovement.posted_at, StockMovement.created_at)
        )
        if warehouse_id is not None:
            query = query.where(StockMovement.warehouse_id == warehouse_id)
        if limit is not None:
            query = query.limit(limit)
        return [
            MovementRecord(
                movement_id=m.id,
                product_id=m.product_id,
                warehouse_id=m.warehouse_id,
                batch=m.batch,
                quantity_delta=_q(m.quantity_delta),
                unit_cost=Decimal(m.unit_cost),
                costed_value=Money.from_minor(m.value, m.currency),
                reason=m.reason,
                transaction_id=m.reference_transaction_id,
                balance_after=_q(m.balance_after),
                average_cost_after=Decimal(m.average_cost_after),
                posted_at=m.posted_at,
                reversal_of_id=m.reversal_of_id,
            )
            for m in self.session.execute(query).scalars()
        ]

    def movement_value_total(self, currency: str) -> Money:
        """
        Net costed value of every movement: inbound adds, outbound removes.

        Equals the inventory account balance when every valued movement was
        journaled and no opening balance was posted to that account.
        """
        inbound = self.session.execute(
            select(func.coalesce(func.sum(StockMovement.value), 0)).where(
                StockMovement.quantity_delta > 0, StockMovement.currency == currency
            )
        ).scalar_one()
        outbound = self.session.execute(
            select(func.coalesce(func.sum(StockMovement.value), 0)).where(
                StockMovement.quantity_delta < 0, StockMovement.currency == currency
            )
        ).scalar_one()
        return Money.from_minor(int(inbound) - int(outbound), currency)

    def reconcile(self) -> list[LotDrift]:
        sums = (
            select(
                StockMovement.product_id.label("product_id"),
                StockMovement.warehouse_id.label("warehouse_id"),
                StockMovement.batch.label("batch"),
                func.sum(StockMovement.quantity_delta).label("total"),
            )
            .group_by(
                StockMovement.product_id,
                StockMovement.warehouse_id,
                StockMovement.batch,
            )
            .subquery()
        )
        rows = self.session.execute(
            select(StockLot, sums.c.total).outerjoin(
                sums,
                (sums.c.product_id == StockLot.product_id)
                & (sums.c.warehouse_id == StockLot.warehouse_id)
                & (sums.c.batch == StockLot.batch),
            )
        ).all()
        drifts = []
        for lot, total in rows:
            snapshot = _q(lot.quantity_on_hand)
            logged = _q(total)
            if snapshot != logged:
                drifts.append(
                    LotDrift(
                        product_id=lot.product_id,
                        warehouse_id=lot.warehouse_id,
                        batch=lot.batch,
                        snapshot_quantity=snapshot,
                        movement_quantity=logged,
                    )
                )
        return drifts

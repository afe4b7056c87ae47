"""
StockLedger -- per-(product, warehouse, batch) quantities and moving-average
cost over an append-only movement log.

Responsibility:
    ``post_movement`` is the only mutator of stock.  It locks the lot row,
    checks the non-negative invariant, recomputes the moving average, updates
    the lot snapshot and appends one StockMovement, all in one flush.
    Reversal, transfer and count adjustment are built on it.  Reservations
    are advisory holds with a TTL; they never change quantity_on_hand.

Invariants enforced:
    - quantity_on_hand never goes below zero unless the ledger was built
      with ``allow_negative_stock=True``.  A deduction that would go
      negative fails with InsufficientStockError; it is never clamped.
    - quantity_on_hand == sum(quantity_delta) of the lot's movements.
    - Inbound: avg' = (qty*avg + value) / (qty + in_qty).  Outbound at the
      average: avg unchanged.  Outbound at an explicit cost (reversal of an
      inbound movement, purchase return): the given value leaves the lot and
      the average is recomputed over what remains.
    - A movement is reversed at most once (unique reversal_of_id).

Failure modes:
    - InsufficientStockError, MovementNotFoundError, AlreadyReversedError,
      ValidationError, ReservationNotFoundError.
    - ConcurrentModificationError when another transaction changed the lot
      between read and write (version check) or created it concurrently.

Flushes only.  The caller owns commit and rollback.
"""

from collections.abc import Iterable
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inventory_kernel.domain.clock import Clock
from inventory_kernel.domain.dtos import MovementRecord
from inventory_kernel.domain.money import Money
from inventory_kernel.exceptions import (
    AlreadyReversedError,
    ConcurrentModificationError,
    InsufficientStockError,
    MovementNotFoundError,
    ReservationNotFoundError,
    ValidationError,
)
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.stock import (
    REVERSAL_SUFFIX,
    MovementReason,
    ReservationStatus,
    StockLot,
    StockMovement,
    StockReservation,
)
from inventory_kernel.services.base import BaseService

logger = get_logger("services.stock_ledger")

COST_QUANTUM = Decimal("0.000000001")
ZERO = Decimal("0")

LotKey = tuple[UUID, UUID, str]


def _quantity(value) -> Decimal:
    if isinstance(value, float):
        raise TypeError("float quantities are not accepted")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _cost(value: Decimal) -> Decimal:
    return value.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


class StockLedger(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        currency: str = "USD",
        allow_negative_stock: bool = False,
        reservation_ttl_seconds: int = 900,
    ):
        super().__init__(session, clock)
        self.currency = currency
        self.allow_negative_stock = allow_negative_stock
        self.reservation_ttl_seconds = reservation_ttl_seconds

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _lock_lot(self, product_id: UUID, warehouse_id: UUID, batch: str) -> StockLot | None:
        return self.session.execute(
            select(StockLot)
            .where(
                StockLot.product_id == product_id,
                StockLot.warehouse_id == warehouse_id,
                StockLot.batch == batch,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def lock_lots(self, keys: Iterable[LotKey]) -> None:
        """
        Lock several lots in a deterministic order.

        Callers touching more than one lot lock them all up front, sorted,
        so two transactions never wait on each other's lots in opposite
        order.
        """
        for product_id, warehouse_id, batch in sorted(
            set(keys), key=lambda k: (str(k[0]), str(k[1]), k[2])
        ):
            self._lock_lot(product_id, warehouse_id, batch)

    def _flush(self, entity_type: str, entity_id) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise ConcurrentModificationError(
                entity_type, entity_id, "row version changed"
            ) from exc

    # ------------------------------------------------------------------
    # Movements
    # ------------------------------------------------------------------

    def post_movement(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        delta,
        unit_cost: Decimal | None,
        reason: str,
        transaction_id: UUID,
        *,
        batch: str = "",
        expiry_date: date | None = None,
        value: Money | None = None,
        at_cost: bool = False,
        reversal_of_id: UUID | None = None,
    ) -> MovementRecord:
        """
        Post one signed quantity change.

        Args:
            delta: Signed quantity; positive is inbound.
            unit_cost: Per-unit cost for inbound movements and for outbound
                ``at_cost`` movements.  Ignored for plain outbound movements,
                which are costed at the current moving average.
            value: Exact costed value, overriding ``delta * unit_cost``.
                Used where the value is already fixed in minor units (a
                purchase line net of discount, a reversal).
            at_cost: Outbound only.  Remove ``value`` (or delta * unit_cost)
                instead of the average and recompute the average.

        Returns:
            MovementRecord with the costed value and the lot state after.
        """
        delta = _quantity(delta)
        if delta == 0:
            raise ValidationError("Stock movement quantity cannot be zero", field="delta")
        if value is not None and value.currency != self.currency:
            raise ValidationError(
                f"Movement valued in {value.currency}, ledger is {self.currency}",
                field="value",
            )

        lot = self._lock_lot(product_id, warehouse_id, batch)
        if lot is None:
            if delta < 0 and not self.allow_negative_stock:
                raise InsufficientStockError(product_id, warehouse_id, -delta, ZERO)
            lot = self._create_lot(product_id, warehouse_id, batch, expiry_date)

        old_qty = Decimal(lot.quantity_on_hand)
        old_avg = Decimal(lot.moving_average_cost)
        new_qty = old_qty + delta

        if delta > 0:
            if value is None:
                if unit_cost is None:
                    raise ValidationError(
                        "Inbound movement requires a unit cost", field="unit_cost"
                    )
                value = Money.from_decimal(delta * unit_cost, self.currency)
            booked_cost = unit_cost if unit_cost is not None else value.amount / delta
            if old_qty <= 0:
                new_avg = value.amount / delta
            else:
                new_avg = (old_qty * old_avg + value.amount) / new_qty
        else:
            qty_out = -delta
            if new_qty < 0 and not self.allow_negative_stock:
                raise InsufficientStockError(product_id, warehouse_id, qty_out, old_qty)
            if at_cost:
                if value is None:
                    if unit_cost is None:
                        raise ValidationError(
                            "Outbound movement at cost requires a unit cost",
                            field="unit_cost",
                        )
                    value = Money.from_decimal(qty_out * unit_cost, self.currency)
                booked_cost = unit_cost if unit_cost is not None else value.amount / qty_out
                if new_qty > 0:
                    remaining = old_qty * old_avg - value.amount
                    new_avg = max(remaining / new_qty, ZERO)
                else:
                    new_avg = old_avg
            else:
                booked_cost = old_avg
                value = Money.from_decimal(qty_out * old_avg, self.currency)
                new_avg = old_avg

        new_avg = _cost(new_avg)
        lot.quantity_on_hand = new_qty
        lot.moving_average_cost = new_avg
        if expiry_date is not None and lot.expiry_date is None:
            lot.expiry_date = expiry_date

        movement = StockMovement(
            id=uuid4(),
            product_id=product_id,
            warehouse_id=warehouse_id,
            batch=batch,
            quantity_delta=delta,
            unit_cost=_cost(Decimal(booked_cost)),
            value=value.minor_units,
            currency=self.currency,
            reason=reason,
            reference_transaction_id=transaction_id,
            reversal_of_id=reversal_of_id,
            balance_after=new_qty,
            average_cost_after=new_avg,
            posted_at=self.clock.now(),
        )
        self.session.add(movement)
        try:
            self._flush("StockLot", lot.id)
        except IntegrityError as exc:
            if reversal_of_id is not None:
                raise AlreadyReversedError("StockMovement", reversal_of_id) from exc
            raise

        logger.info(
            "stock_movement_posted",
            extra={
                "movement_id": str(movement.id),
                "product_id": str(product_id),
                "warehouse_id": str(warehouse_id),
                "batch": batch,
                "quantity_delta": str(delta),
                "reason": reason,
                "balance_after": str(new_qty),
                "average_cost_after": str(new_avg),
            },
        )
        return self._record(movement)

    def _create_lot(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        batch: str,
        expiry_date: date | None,
    ) -> StockLot:
        lot = StockLot(
            product_id=product_id,
            warehouse_id=warehouse_id,
            batch=batch,
            expiry_date=expiry_date,
            quantity_on_hand=ZERO,
            moving_average_cost=ZERO,
            currency=self.currency,
        )
        self.session.add(lot)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ConcurrentModificationError(
                "StockLot",
                f"{product_id}/{warehouse_id}/{batch}",
                "lot created concurrently",
            ) from exc
        logger.debug(
            "stock_lot_created",
            extra={"product_id": str(product_id), "warehouse_id": str(warehouse_id)},
        )
        return lot

    def reverse_movement(
        self, movement_id: UUID, transaction_id: UUID
    ) -> MovementRecord:
        """
        Post the exact negation of a movement.

        The reversal carries the original's unit cost and value, so the lot
        regains (or gives up) exactly what the original moved.  Its reason is
        the original reason suffixed ``_reversal``.

        Raises:
            MovementNotFoundError: no such movement.
            AlreadyReversedError: a reversal already references it.
            ValidationError: the movement is itself a reversal.
        """
        original = self.session.get(StockMovement, movement_id)
        if original is None:
            raise MovementNotFoundError(movement_id)
        if original.reversal_of_id is not None:
            raise ValidationError(
                f"Movement {movement_id} is a reversal and cannot be reversed",
                field="movement_id",
            )
        existing = self.session.execute(
            select(StockMovement.id).where(StockMovement.reversal_of_id == original.id)
        ).scalar_one_or_none()
        if existing is not None:
            raise AlreadyReversedError("StockMovement", original.id, existing)

        delta = -Decimal(original.quantity_delta)
        value = Money.from_minor(original.value, original.currency)
        return self.post_movement(
            original.product_id,
            original.warehouse_id,
            delta,
            Decimal(original.unit_cost),
            f"{original.reason}{REVERSAL_SUFFIX}",
            transaction_id,
            batch=original.batch,
            value=value,
            at_cost=delta < 0,
            reversal_of_id=original.id,
        )

    def movements_for(self, transaction_id: UUID) -> list[MovementRecord]:
        """Non-reversal movements posted for a transaction id."""
        rows = self.session.execute(
            select(StockMovement)
            .where(
                StockMovement.reference_transaction_id == transaction_id,
                StockMovement.reversal_of_id.is_(None),
            )
            .order_by(StockMovement.posted_at, StockMovement.created_at)
        ).scalars()
        return [self._record(row) for row in rows]

    def transfer(
        self,
        product_id: UUID,
        from_warehouse_id: UUID,
        to_warehouse_id: UUID,
        qty,
        transaction_id: UUID,
        *,
        batch: str = "",
    ) -> tuple[MovementRecord, MovementRecord]:
        """Move stock between warehouses at the source's moving average."""
        qty = _quantity(qty)
        if qty <= 0:
            raise ValidationError("Transfer quantity must be positive", field="qty")
        if from_warehouse_id == to_warehouse_id:
            raise ValidationError(
                "Source and destination warehouse are the same",
                field="to_warehouse_id",
            )
        self.lock_lots(
            [(product_id, from_warehouse_id, batch), (product_id, to_warehouse_id, batch)]
        )
        out_record = self.post_movement(
            product_id,
            from_warehouse_id,
            -qty,
            None,
            MovementReason.TRANSFER_OUT.value,
            transaction_id,
            batch=batch,
        )
        in_record = self.post_movement(
            product_id,
            to_warehouse_id,
            qty,
            out_record.unit_cost,
            MovementReason.TRANSFER_IN.value,
            transaction_id,
            batch=batch,
            value=out_record.costed_value,
        )
        return out_record, in_record

    def adjust_to(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        counted_qty,
        transaction_id: UUID,
        *,
        batch: str = "",
        unit_cost: Decimal | None = None,
    ) -> MovementRecord | None:
        """
        Bring on-hand quantity to a physical count.

        Gains are valued at ``unit_cost`` if given, else at the current
        moving average; losses at the moving average.  Returns None when the
        count already matches.
        """
        counted_qty = _quantity(counted_qty)
        if counted_qty < 0:
            raise ValidationError("Counted quantity cannot be negative", field="counted_qty")
        lot = self._lock_lot(product_id, warehouse_id, batch)
        on_hand = Decimal(lot.quantity_on_hand) if lot else ZERO
        difference = counted_qty - on_hand
        if difference == 0:
            return None
        if difference > 0 and unit_cost is None:
            unit_cost = Decimal(lot.moving_average_cost) if lot else ZERO
        return self.post_movement(
            product_id,
            warehouse_id,
            difference,
            unit_cost,
            MovementReason.ADJUSTMENT.value,
            transaction_id,
            batch=batch,
        )

    # ------------------------------------------------------------------
    # Queries on the ledger's own state
    # ------------------------------------------------------------------

    def _lot(self, product_id: UUID, warehouse_id: UUID, batch: str) -> StockLot | None:
        return self.session.execute(
            select(StockLot).where(
                StockLot.product_id == product_id,
                StockLot.warehouse_id == warehouse_id,
                StockLot.batch == batch,
            )
        ).scalar_one_or_none()

    def quantity_on_hand(self, product_id: UUID, warehouse_id: UUID, batch: str = "") -> Decimal:
        lot = self._lot(product_id, warehouse_id, batch)
        return Decimal(lot.quantity_on_hand) if lot else ZERO

    def moving_average_cost(self, product_id: UUID, warehouse_id: UUID, batch: str = "") -> Decimal:
        lot = self._lot(product_id, warehouse_id, batch)
        return Decimal(lot.moving_average_cost) if lot else ZERO

    def current_valuation(self, product_id: UUID, warehouse_id: UUID, batch: str = "") -> Money:
        """quantity_on_hand * moving_average_cost, rounded to minor units."""
        lot = self._lot(product_id, warehouse_id, batch)
        if lot is None:
            return Money.zero(self.currency)
        return Money.from_decimal(
            Decimal(lot.quantity_on_hand) * Decimal(lot.moving_average_cost),
            self.currency,
        )

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def reserved_quantity(self, product_id: UUID, warehouse_id: UUID, batch: str = "") -> Decimal:
        """Sum of active reservations that have not yet expired."""
        total = self.session.execute(
            select(func.coalesce(func.sum(StockReservation.quantity), 0)).where(
                StockReservation.product_id == product_id,
                StockReservation.warehouse_id == warehouse_id,
                StockReservation.batch == batch,
                StockReservation.status == ReservationStatus.ACTIVE.value,
                StockReservation.expires_at > self.clock.now(),
            )
        ).scalar_one()
        return Decimal(str(total))

    def available_quantity(self, product_id: UUID, warehouse_id: UUID, batch: str = "") -> Decimal:
        return self.quantity_on_hand(product_id, warehouse_id, batch) - self.reserved_quantity(
            product_id, warehouse_id, batch
        )

    def reserve(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        qty,
        *,
        batch: str = "",
        transaction_id: UUID | None = None,
        ttl_seconds: int | None = None,
    ) -> UUID:
        """
        Hold ``qty`` of visible stock for a pending transaction.

        Returns the reservation token.  The hold lapses after the TTL unless
        it is consumed by apply or released first.
        """
        qty = _quantity(qty)
        if qty <= 0:
            raise ValidationError("Reservation quantity must be positive", field="qty")
        lot = self._lock_lot(product_id, warehouse_id, batch)
        if not self.allow_negative_stock:
            on_hand = Decimal(lot.quantity_on_hand) if lot else ZERO
            available = on_hand - self.reserved_quantity(product_id, warehouse_id, batch)
            if qty > available:
                raise InsufficientStockError(product_id, warehouse_id, qty, available)

        ttl = ttl_seconds if ttl_seconds is not None else self.reservation_ttl_seconds
        reservation = StockReservation(
            id=uuid4(),
            product_id=product_id,
            warehouse_id=warehouse_id,
            batch=batch,
            quantity=qty,
            transaction_id=transaction_id,
            status=ReservationStatus.ACTIVE.value,
            expires_at=self.clock.now() + timedelta(seconds=ttl),
        )
        self.session.add(reservation)
        self.session.flush()
        logger.info(
            "stock_reserved",
            extra={
                "reservation_id": str(reservation.id),
                "product_id": str(product_id),
                "warehouse_id": str(warehouse_id),
                "quantity": str(qty),
                "ttl_seconds": ttl,
            },
        )
        return reservation.id

    def release(self, token: UUID) -> None:
        reservation = self.session.get(StockReservation, token, with_for_update=True)
        if reservation is None:
            raise ReservationNotFoundError(token)
        if reservation.status != ReservationStatus.ACTIVE.value:
            raise ReservationNotFoundError(token, str(reservation.status))
        reservation.status = ReservationStatus.RELEASED.value
        self.session.flush()
        logger.info("stock_reservation_released", extra={"reservation_id": str(token)})

    def _close_reservations(self, status: ReservationStatus, *conditions) -> int:
        result = self.session.execute(
            update(StockReservation)
            .where(StockReservation.status == ReservationStatus.ACTIVE.value, *conditions)
            .values(status=status.value)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def consume_reservations(self, transaction_id: UUID) -> int:
        count = self._close_reservations(
            ReservationStatus.CONSUMED, StockReservation.transaction_id == transaction_id
        )
        if count:
            logger.info(
                "stock_reservations_consumed",
                extra={"transaction_id": str(transaction_id), "count": count},
            )
        return count

    def release_for_transaction(self, transaction_id: UUID) -> int:
        return self._close_reservations(
            ReservationStatus.RELEASED, StockReservation.transaction_id == transaction_id
        )

    def expire_reservations(self) -> int:
        """Mark lapsed active reservations expired; returns how many."""
        count = self._close_reservations(
            ReservationStatus.EXPIRED, StockReservation.expires_at <= self.clock.now()
        )
        logger.info("stock_reservations_expired", extra={"count": count})
        return count

    # ------------------------------------------------------------------

    @staticmethod
    def _record(movement: StockMovement) -> MovementRecord:
        return MovementRecord(
            movement_id=movement.id,
            product_id=movement.product_id,
            warehouse_id=movement.warehouse_id,
            batch=movement.batch,
            quantity_delta=Decimal(movement.quantity_delta),
            unit_cost=Decimal(movement.unit_cost),
            costed_value=Money.from_minor(movement.value, movement.currency),
            reason=movement.reason,
            transaction_id=movement.reference_transaction_id,
            balance_after=Decimal(movement.balance_after),
            average_cost_after=Decimal(movement.average_cost_after),
            posted_at=movement.posted_at,
            reversal_of_id=movement.reversal_of_id,
        )

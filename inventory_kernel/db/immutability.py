"""
ORM-level append-only enforcement.

Rules:
    - StockMovement, JournalBatch, JournalEntry and Payment rows are never
      updated or deleted.  Reversal appends a new row instead.
    - An applied BusinessTransaction only changes its status annotation and
      its reversed_by_id link.  Its items only receive their unit_cost once.
    - An applied BusinessTransaction (and so its items) is never deleted.
    - A Product referenced by any movement, or a LedgerAccount referenced by
      any journal entry, is never deleted.  Deactivate it instead.

Audit metadata (updated_at, updated_by_id) may always change.

Violations raise ImmutabilityViolationError from inside the flush, which
aborts it.  Listeners are registered once per process by
register_immutability_listeners().
"""

from sqlalchemy import event, func, inspect, select
from sqlalchemy.orm import Session

from inventory_kernel.exceptions import ImmutabilityViolationError
from inventory_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})
_HEADER_MUTABLE_AFTER_APPLY = _AUDIT_FIELDS | {"status", "reversed_by_id"}
_UNAPPLIED_STATES = frozenset({"draft", "pending"})

_registered = False


def _changed_columns(target) -> set[str]:
    state = inspect(target)
    return {
        attr.key
        for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    }


def _committed_status(header) -> str:
    """Status as last persisted, ignoring a pending change in this flush."""
    history = inspect(header).attrs.status.history
    if history.deleted:
        return history.deleted[0]
    return header.status


def _reject(entity_type: str, target, reason: str) -> None:
    logger.error(
        "immutability_violation",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(entity_type, target.id, reason)


def _append_only(entity_type: str):
    def _before_update(mapper, connection, target):
        changed = _changed_columns(target) - _AUDIT_FIELDS
        if changed:
            _reject(
                entity_type,
                target,
                f"append-only record; attempted change to {sorted(changed)}",
            )

    def _before_delete(mapper, connection, target):
        _reject(entity_type, target, "append-only record cannot be deleted")

    return _before_update, _before_delete


def _check_header_update(mapper, connection, target):
    if _committed_status(target) in _UNAPPLIED_STATES:
        return
    changed = _changed_columns(target) - _HEADER_MUTABLE_AFTER_APPLY
    if changed:
        _reject(
            "BusinessTransaction",
            target,
            f"applied transaction; attempted change to {sorted(changed)}",
        )


def _check_item_update(mapper, connection, target):
    header = target.transaction
    if header is None or _committed_status(header) in _UNAPPLIED_STATES:
        return
    changed = _changed_columns(target) - _AUDIT_FIELDS
    history = inspect(target).attrs.unit_cost.history
    if changed == {"unit_cost"} and all(v is None for v in history.deleted):
        return
    if changed:
        _reject(
            "TransactionItem",
            target,
            f"item of applied transaction; attempted change to {sorted(changed)}",
        )


def _check_deletions_before_flush(session, flush_context, instances):
    """
    Reject deletes of referenced or applied rows before the flush plan runs.

    Mapper-level before_delete fires too late for relationship cascades, so
    referenced-row checks live here.
    """
    from inventory_kernel.models.account import LedgerAccount
    from inventory_kernel.models.journal import JournalEntry
    from inventory_kernel.models.product import Product
    from inventory_kernel.models.stock import StockMovement
    from inventory_kernel.models.transaction import BusinessTransaction

    for obj in list(session.deleted):
        if isinstance(obj, BusinessTransaction):
            if _committed_status(obj) not in _UNAPPLIED_STATES:
                _reject(
                    "BusinessTransaction",
                    obj,
                    f"transaction in status '{obj.status}' cannot be deleted",
                )
        elif isinstance(obj, Product):
            with session.no_autoflush:
                count = session.execute(
                    select(func.count(StockMovement.id)).where(
                        StockMovement.product_id == obj.id
                    )
                ).scalar_one()
            if count:
                _reject("Product", obj, "referenced by stock movements")
        elif isinstance(obj, LedgerAccount):
            with session.no_autoflush:
                count = session.execute(
                    select(func.count(JournalEntry.id)).where(
                        JournalEntry.account_id == obj.id
                    )
                ).scalar_one()
            if count:
                _reject("LedgerAccount", obj, "referenced by journal entries")


def register_immutability_listeners() -> None:
    """Register all listeners.  Safe to call more than once."""
    global _registered
    if _registered:
        return

    from inventory_kernel.models.journal import JournalBatch, JournalEntry
    from inventory_kernel.models.payment import Payment
    from inventory_kernel.models.stock import StockMovement
    from inventory_kernel.models.transaction import (
        BusinessTransaction,
        TransactionItem,
    )

    for model in (StockMovement, JournalBatch, JournalEntry, Payment):
        before_update, before_delete = _append_only(model.__name__)
        event.listen(model, "before_update", before_update)
        event.listen(model, "before_delete", before_delete)

    event.listen(BusinessTransaction, "before_update", _check_header_update)
    event.listen(TransactionItem, "before_update", _check_item_update)
    event.listen(Session, "before_flush", _check_deletions_before_flush)

    _registered = True
    logger.debug("immutability_listeners_registered")

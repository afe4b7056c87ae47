"""Database layer - engine, base classes, column types, immutability."""

from inventory_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from inventory_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    session_scope,
)
from inventory_kernel.db.types import CurrencyCode, MinorUnits, Quantity, UnitCost

__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "CurrencyCode",
    "MinorUnits",
    "Quantity",
    "UnitCost",
]

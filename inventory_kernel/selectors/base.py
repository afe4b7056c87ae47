"""
Module: inventory_kernel.selectors.base
Responsibility: Base for read-only query selectors.  Selectors never add,
    delete, flush or commit; they return frozen DTOs, not ORM instances.
    Balances and stock levels are derived from the append-only logs.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    def __init__(self, session: Session):
        self.session = session

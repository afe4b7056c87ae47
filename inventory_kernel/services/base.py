"""
BaseService -- common constructor for write services.

Write services receive a Session and only ever ``flush()``.  They never
commit or roll back: the TransactionCoordinator (or a test, or
``session_scope``) owns the transaction, which is what lets a stock
movement and its journal batch land atomically.
"""

from abc import ABC

from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

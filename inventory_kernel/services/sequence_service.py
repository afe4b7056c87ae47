"""
SequenceService -- monotonic document numbers via locked counter rows.

Each transaction type has a named counter.  ``next_value`` locks the row
(SELECT ... FOR UPDATE), increments it and flushes; the number is only
consumed if the caller's transaction commits.  The aggregate max()+1
pattern is never used.

First use of a counter inserts its row.  Two transactions racing to insert
the same counter collide on the unique name; the loser gets
ConcurrentModificationError and the whole call can be retried.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from inventory_kernel.domain.dtos import TransactionType
from inventory_kernel.exceptions import ConcurrentModificationError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.sequence import SequenceCounter
from inventory_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceService(BaseService):
    def next_value(self, sequence_name: str) -> int:
        counter = self.session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self.session.add(counter)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConcurrentModificationError(
                    "SequenceCounter", sequence_name, "counter created concurrently"
                ) from exc

        counter.current_value += 1
        self.session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        counter = self.session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None

    def next_reference(self, transaction_type: str) -> str:
        """Next document number for a type, e.g. ``SAL-000042``."""
        prefix = TransactionType(transaction_type).document_prefix
        return f"{prefix}-{self.next_value(prefix):06d}"

"""
Module: inventory_kernel.models.sequence
Responsibility: Named counter rows behind document numbers.  Incremented
    under SELECT ... FOR UPDATE; never computed as max()+1.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import Base


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

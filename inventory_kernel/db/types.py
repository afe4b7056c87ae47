"""
Module: inventory_kernel.db.types
Responsibility: Annotated column aliases shared by every model, so quantity,
    cost and money columns have identical precision system-wide.
Architecture position: Kernel > DB.  MUST NOT import from models/, domain/,
    services/ or selectors/.

No floats anywhere: quantities and per-unit costs are Decimal, money columns
are integer minor units next to a currency code.
"""

from decimal import Decimal
from typing import Annotated

from sqlalchemy import BigInteger, Numeric, String

# Signed stock quantity (units may be fractional, e.g. kg)
Quantity = Annotated[Decimal, Numeric(38, 9)]

# Per-unit cost in major currency units.  Moving averages need more precision
# than the currency's minor unit.
UnitCost = Annotated[Decimal, Numeric(38, 9)]

# Money amount in integer minor units (cents for USD)
MinorUnits = Annotated[int, BigInteger]

# ISO 4217 currency code
CurrencyCode = Annotated[str, String(3)]

ShortCode = Annotated[str, String(50)]
LongText = Annotated[str, String(4000)]

ZERO_QUANTITY = Decimal("0")

"""
Inventory configuration schema.

Frozen dataclasses produced by ``inventory_config.loader`` from YAML.  They
are plain data; ``inventory_config.bridges`` turns them into the kernel's
runtime objects (KernelPolicy, RetryPolicy).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

TRANSACTION_TYPES = (
    "sale",
    "purchase",
    "sale_return",
    "purchase_return",
    "bank_transaction",
)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    base_delay_ms: int = 50
    max_delay_ms: int = 2000


@dataclass(frozen=True)
class TaxConfig:
    """Tax rule for one transaction type."""

    rate_percent: Decimal = Decimal("0")
    tax_after_discount: bool = False


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///inventory.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 10


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class InventoryConfig:
    """The complete runtime configuration."""

    currency: str = "USD"
    allow_negative_stock: bool = False
    reservation_ttl_seconds: int = 900
    retry: RetryConfig = field(default_factory=RetryConfig)
    tax: dict[str, TaxConfig] = field(default_factory=dict)
    require_approval: dict[str, bool] = field(default_factory=dict)
    account_roles: dict[str, str] = field(default_factory=dict)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source: str | None = None

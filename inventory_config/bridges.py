"""
Config -> kernel bridges.

Convert an InventoryConfig into the objects the kernel accepts.  They live
here, on the producer side, because inventory_kernel never imports
inventory_config.

Usage:
    config = get_active_config()
    policy = build_kernel_policy(config)
    coordinator = TransactionCoordinator(session, policy)
"""

from __future__ import annotations

from sqlalchemy.engine import Engine

from inventory_config.schema import InventoryConfig
from inventory_kernel.db.engine import init_engine_from_url
from inventory_kernel.domain.dtos import TransactionType
from inventory_kernel.domain.policy import DEFAULT_ROLE_CODES, KernelPolicy
from inventory_kernel.domain.pricing import TaxPolicy
from inventory_kernel.logging_config import configure_logging
from inventory_kernel.services.retry import RetryPolicy


def build_kernel_policy(config: InventoryConfig) -> KernelPolicy:
    """Configured role codes override the defaults role by role."""
    role_codes = dict(DEFAULT_ROLE_CODES)
    role_codes.update(config.account_roles)
    return KernelPolicy(
        currency=config.currency,
        allow_negative_stock=config.allow_negative_stock,
        reservation_ttl_seconds=config.reservation_ttl_seconds,
        tax_policies={
            TransactionType(kind): TaxPolicy(rule.rate_percent, rule.tax_after_discount)
            for kind, rule in config.tax.items()
        },
        require_approval=frozenset(
            TransactionType(kind) for kind, flag in config.require_approval.items() if flag
        ),
        role_codes=role_codes,
    )


def build_retry_policy(config: InventoryConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry.max_attempts,
        base_delay_ms=config.retry.base_delay_ms,
        max_delay_ms=config.retry.max_delay_ms,
    )


def init_engine_from_config(config: InventoryConfig) -> Engine:
    db = config.database
    return init_engine_from_url(
        db.url, echo=db.echo, pool_size=db.pool_size, max_overflow=db.max_overflow
    )


def configure_logging_from_config(config: InventoryConfig, **kwargs) -> None:
    """configure_logging at the configured level; kwargs pass through (stream, handler)."""
    configure_logging(level=config.logging.level, **kwargs)

"""
Configuration loader (``inventory_config.loader``).

Reads one YAML document with ``yaml.safe_load`` and parses it into the
frozen dataclasses of ``inventory_config.schema``.  Sections that are absent
take their defaults; sections that are present are checked strictly.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key, wrong type or out-of-range value  -> ``ConfigError`` naming
  the offending key path (e.g. ``retry.max_attempts``).
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from inventory_config.schema import (
    TRANSACTION_TYPES,
    DatabaseConfig,
    InventoryConfig,
    LoggingConfig,
    RetryConfig,
    TaxConfig,
)
from inventory_kernel.domain.currency import CurrencyRegistry
from inventory_kernel.domain.posting_rules import Role

_TOP_LEVEL_KEYS = frozenset(
    {
        "currency",
        "allow_negative_stock",
        "reservation_ttl_seconds",
        "retry",
        "tax",
        "require_approval",
        "account_roles",
        "database",
        "logging",
    }
)
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class ConfigError(ValueError):
    """A configuration value is missing, unknown or malformed."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"{key}: {message}")


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError("<root>", "configuration must be a mapping")
    return data


def _mapping(data: Any, key: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(key, f"expected a mapping, got {type(data).__name__}")
    return data


def _check_keys(data: dict[str, Any], allowed, prefix: str) -> None:
    for name in data:
        if name not in allowed:
            raise ConfigError(f"{prefix}{name}", "unknown key")


def _bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(key, f"expected true or false, got {value!r}")
    return value


def _int(value: Any, key: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(key, f"expected an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(key, f"must be at least {minimum}, got {value}")
    return value


def _str(value: Any, key: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(key, f"expected a non-empty string, got {value!r}")
    return value


def _decimal(value: Any, key: str) -> Decimal:
    if isinstance(value, bool):
        raise ConfigError(key, f"expected a number, got {value!r}")
    try:
        # str() so that YAML floats keep their written digits
        result = Decimal(str(value))
    except InvalidOperation:
        raise ConfigError(key, f"expected a number, got {value!r}") from None
    if result < 0:
        raise ConfigError(key, f"must not be negative, got {result}")
    return result


def parse_retry(data: dict[str, Any]) -> RetryConfig:
    _check_keys(data, {"max_attempts", "base_delay_ms", "max_delay_ms"}, "retry.")
    defaults = RetryConfig()
    config = RetryConfig(
        max_attempts=_int(
            data.get("max_attempts", defaults.max_attempts), "retry.max_attempts", minimum=1
        ),
        base_delay_ms=_int(
            data.get("base_delay_ms", defaults.base_delay_ms), "retry.base_delay_ms"
        ),
        max_delay_ms=_int(
            data.get("max_delay_ms", defaults.max_delay_ms), "retry.max_delay_ms"
        ),
    )
    if config.max_delay_ms < config.base_delay_ms:
        raise ConfigError("retry.max_delay_ms", "must not be below base_delay_ms")
    return config


def parse_tax(data: dict[str, Any]) -> dict[str, TaxConfig]:
    _check_keys(data, TRANSACTION_TYPES, "tax.")
    rules = {}
    for kind, rule in data.items():
        rule = _mapping(rule, f"tax.{kind}")
        _check_keys(rule, {"rate_percent", "tax_after_discount"}, f"tax.{kind}.")
        rules[kind] = TaxConfig(
            rate_percent=_decimal(rule.get("rate_percent", 0), f"tax.{kind}.rate_percent"),
            tax_after_discount=_bool(
                rule.get("tax_after_discount", False), f"tax.{kind}.tax_after_discount"
            ),
        )
    return rules


def parse_require_approval(data: dict[str, Any]) -> dict[str, bool]:
    _check_keys(data, TRANSACTION_TYPES, "require_approval.")
    return {kind: _bool(flag, f"require_approval.{kind}") for kind, flag in data.items()}


def parse_account_roles(data: dict[str, Any]) -> dict[str, str]:
    _check_keys(data, Role.ALL, "account_roles.")
    # Codes may be written as YAML integers (1000)
    return {role: _str(str(code), f"account_roles.{role}") for role, code in data.items()}


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    _check_keys(data, {"url", "echo", "pool_size", "max_overflow"}, "database.")
    defaults = DatabaseConfig()
    return DatabaseConfig(
        url=_str(data.get("url", defaults.url), "database.url"),
        echo=_bool(data.get("echo", defaults.echo), "database.echo"),
        pool_size=_int(data.get("pool_size", defaults.pool_size), "database.pool_size", minimum=1),
        max_overflow=_int(
            data.get("max_overflow", defaults.max_overflow), "database.max_overflow"
        ),
    )


def parse_logging(data: dict[str, Any]) -> LoggingConfig:
    _check_keys(data, {"level"}, "logging.")
    level = _str(data.get("level", "INFO"), "logging.level").upper()
    if level not in _LOG_LEVELS:
        raise ConfigError("logging.level", f"unknown level {level!r}")
    return LoggingConfig(level=level)


def parse_config(data: dict[str, Any], source: str | None = None) -> InventoryConfig:
    """Build an InventoryConfig from a parsed YAML mapping."""
    _check_keys(data, _TOP_LEVEL_KEYS, "")

    currency = _str(data.get("currency", "USD"), "currency").upper()
    if not CurrencyRegistry.is_valid(currency):
        raise ConfigError("currency", f"unknown ISO 4217 code {currency!r}")

    return InventoryConfig(
        currency=currency,
        allow_negative_stock=_bool(
            data.get("allow_negative_stock", False), "allow_negative_stock"
        ),
        reservation_ttl_seconds=_int(
            data.get("reservation_ttl_seconds", 900), "reservation_ttl_seconds", minimum=1
        ),
        retry=parse_retry(_mapping(data.get("retry"), "retry")),
        tax=parse_tax(_mapping(data.get("tax"), "tax")),
        require_approval=parse_require_approval(
            _mapping(data.get("require_approval"), "require_approval")
        ),
        account_roles=parse_account_roles(_mapping(data.get("account_roles"), "account_roles")),
        database=parse_database(_mapping(data.get("database"), "database")),
        logging=parse_logging(_mapping(data.get("logging"), "logging")),
        source=source,
    )


def load_config(path: Path) -> InventoryConfig:
    return parse_config(load_yaml_file(path), source=str(path))

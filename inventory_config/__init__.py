"""
inventory_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration.  It
    loads one YAML file (the packaged ``defaults.yaml`` unless a path or
    ``INVENTORY_CONFIG_PATH`` says otherwise), validates it, applies the
    ``INVENTORY_DATABASE_URL`` override and returns a frozen
    ``InventoryConfig``.

Architecture position:
    Sits above ``inventory_kernel``.  The kernel never imports this package;
    ``inventory_config.bridges`` translates the config into kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- the configured path does not exist.
    - ``yaml.YAMLError`` -- the file is not valid YAML.
    - ``ConfigError`` -- a key is unknown or a value is malformed.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

from inventory_config.loader import ConfigError, load_config
from inventory_config.schema import InventoryConfig

_logger = logging.getLogger("inventory_kernel.config")

CONFIG_PATH_ENV = "INVENTORY_CONFIG_PATH"
DATABASE_URL_ENV = "INVENTORY_DATABASE_URL"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> InventoryConfig:
    """
    Load and validate the active configuration.

    Args:
        path: YAML file to load.  Falls back to ``$INVENTORY_CONFIG_PATH``,
            then to the packaged defaults.
    """
    resolved = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    config = load_config(resolved)

    database_url = os.environ.get(DATABASE_URL_ENV)
    if database_url:
        config = dataclasses.replace(
            config, database=dataclasses.replace(config.database, url=database_url)
        )

    _logger.info(
        "inventory_config_loaded",
        extra={
            "source": config.source,
            "currency": config.currency,
            "allow_negative_stock": config.allow_negative_stock,
            "database_override": bool(database_url),
        },
    )
    return config


__all__ = [
    "ConfigError",
    "InventoryConfig",
    "get_active_config",
]

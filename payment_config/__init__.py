"""
payment_config -- single public entrypoint for payment engine configuration.

Responsibility:
    ``get_active_config()`` returns the validated ``PaymentConfig`` the
    services run with.  YAML parsing lives in ``loader``; the dataclasses in
    ``schema``.

Architecture position:
    Configuration.  Imported by kernel services and modules; imports nothing
    from them.

Failure modes:
    - ``FileNotFoundError`` when the requested file does not exist.
    - ``ValueError`` / ``KeyError`` on schema violations.

Audit relevance:
    Every load emits a ``payment_config_loaded`` log entry with the config id,
    version and checksum so postings can be traced to the rules in force.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from payment_config.loader import load_config_file
from payment_config.schema import PaymentConfig
from payment_kernel.logging_config import get_logger

logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

CONFIG_PATH_ENV = "PAYMENT_CONFIG_PATH"

__all__ = ["DEFAULT_CONFIG_PATH", "PaymentConfig", "get_active_config"]


@lru_cache(maxsize=8)
def _load(path: str) -> PaymentConfig:
    config = load_config_file(Path(path))
    logger.info(
        "payment_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "account_count": len(config.accounts),
            "posting_rule_count": len(config.posting_rules),
        },
    )
    return config


def get_active_config(config_path: Path | str | None = None) -> PaymentConfig:
    """
    Return the active configuration.

    Resolution order: explicit ``config_path``, then the
    ``PAYMENT_CONFIG_PATH`` environment variable, then the bundled
    ``sets/default.yaml``.  Parsed files are cached per path.
    """
    path = config_path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    return _load(str(Path(path).resolve()))

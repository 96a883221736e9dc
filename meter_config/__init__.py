"""
meter_config -- single public entrypoint for ledger configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains the
    thresholds, tolerances and currency pair the engines use.

Failure modes:
    - ``FileNotFoundError`` -- override path does not exist.
    - ``ValueError`` -- a value is out of range.

Audit relevance:
    Every call emits a ``METER_CONFIG_TRACE`` log entry with config_id,
    version and checksum, tying each ledger decision to the exact
    configuration that governed it.
"""

from __future__ import annotations

from pathlib import Path

from meter_config.loader import load_config
from meter_config.schema import (
    AnomalyMode,
    ChronologyConfig,
    CurrencyConfig,
    ForecastConfig,
    LedgerConfig,
    MatchingConfig,
    ReceiptConfig,
)
from meter_kernel.logging_config import get_logger

_logger = get_logger("config")


def get_active_config(path: Path | str | None = None) -> LedgerConfig:
    """
    Load the active configuration.

    Does not cache; callers hold the returned config for the lifetime of
    their engines and services.

    Args:
        path: Optional YAML file merged over the packaged defaults.
    """
    config = load_config(Path(path) if path is not None else None)
    _logger.info(
        "METER_CONFIG_TRACE",
        extra={
            "trace_type": "METER_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "config_checksum": config.checksum,
            "anomaly_mode": config.chronology.anomaly_mode.value,
            "internal_currency": config.currency.internal,
            "official_currency": config.currency.official,
        },
    )
    return config


__all__ = [
    "AnomalyMode",
    "ChronologyConfig",
    "CurrencyConfig",
    "ForecastConfig",
    "LedgerConfig",
    "MatchingConfig",
    "ReceiptConfig",
    "get_active_config",
]

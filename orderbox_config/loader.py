"""
Configuration Loader (``orderbox_config.loader``).

Responsibility
--------------
Reads the YAML configuration file and parses it into the frozen
``orderbox_config.schema`` dataclasses, applying defaults for absent keys
and range rules for present ones.

Architecture position
---------------------
**Config layer**.  Depends only on ``orderbox_kernel.exceptions`` and
``orderbox_kernel.logging_config``.  The batch layer receives an
``OrderboxConfig`` and never reads files itself.

Range rules
-----------
* ``batch_size`` values <= 0 fall back to the section default.
* ``sync.max_results_per_page`` is clamped to 1..500.
* ``sync.timeout_minutes`` outside 1..120 is rejected.
* ``enrichment.batch_size`` is clamped to 1..50.
* ``enrichment.delay_seconds`` is clamped to 0..60.

Failure modes
-------------
* Missing file  -> a default config is written to ``path`` and returned.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Non-integer value for an integer key, or a section that is not a
  mapping  -> ``ConfigError``.
"""

from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml

from orderbox_config.schema import (
    DEFAULT_DATABASE_URL,
    EnrichmentConfig,
    OrderboxConfig,
    ParseConfig,
    SyncConfig,
)
from orderbox_kernel.exceptions import ConfigError
from orderbox_kernel.logging_config import get_logger

logger = get_logger("config.loader")

MAX_RESULTS_PER_PAGE_RANGE = (1, 500)
TIMEOUT_MINUTES_RANGE = (1, 120)
ENRICHMENT_BATCH_SIZE_RANGE = (1, 50)
ENRICHMENT_DELAY_SECONDS_RANGE = (0, 60)


def clamp_batch_size(value: int, default: int) -> int:
    """Non-positive batch sizes mean "use the default"."""
    return value if value > 0 else default


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigError: if the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError("<root>", "top-level YAML document must be a mapping")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(name, "section must be a mapping")
    return value


def _int(section: dict[str, Any], section_name: str, key: str, default: int) -> int:
    value = section.get(key, default)
    # bool is an int subclass; "true" is never a valid count
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{section_name}.{key}", f"expected integer, got {value!r}")
    return value


def parse_sync(data: dict[str, Any]) -> SyncConfig:
    defaults = SyncConfig()
    timeout = _int(data, "sync", "timeout_minutes", defaults.timeout_minutes)
    low, high = TIMEOUT_MINUTES_RANGE
    if not low <= timeout <= high:
        raise ConfigError(
            "sync.timeout_minutes", f"must be between {low} and {high}, got {timeout}",
        )
    max_total = data.get("max_total")
    if max_total is not None:
        max_total = _int(data, "sync", "max_total", 0)
    return SyncConfig(
        batch_size=clamp_batch_size(
            _int(data, "sync", "batch_size", defaults.batch_size),
            defaults.batch_size,
        ),
        max_results_per_page=_clamp(
            _int(data, "sync", "max_results_per_page", defaults.max_results_per_page),
            MAX_RESULTS_PER_PAGE_RANGE,
        ),
        timeout_minutes=timeout,
        max_total=max_total,
    )


def parse_parse(data: dict[str, Any]) -> ParseConfig:
    defaults = ParseConfig()
    return ParseConfig(
        batch_size=clamp_batch_size(
            _int(data, "parse", "batch_size", defaults.batch_size),
            defaults.batch_size,
        ),
    )


def parse_enrichment(data: dict[str, Any]) -> EnrichmentConfig:
    defaults = EnrichmentConfig()
    return EnrichmentConfig(
        batch_size=_clamp(
            clamp_batch_size(
                _int(data, "enrichment", "batch_size", defaults.batch_size),
                defaults.batch_size,
            ),
            ENRICHMENT_BATCH_SIZE_RANGE,
        ),
        delay_seconds=_clamp(
            _int(data, "enrichment", "delay_seconds", defaults.delay_seconds),
            ENRICHMENT_DELAY_SECONDS_RANGE,
        ),
        api_batch_size=clamp_batch_size(
            _int(data, "enrichment", "api_batch_size", defaults.api_batch_size),
            defaults.api_batch_size,
        ),
        api_delay_seconds=max(
            0,
            _int(data, "enrichment", "api_delay_seconds", defaults.api_delay_seconds),
        ),
    )


def parse_config(data: dict[str, Any]) -> OrderboxConfig:
    """Build an ``OrderboxConfig`` from an already-parsed YAML mapping."""
    database_url = data.get("database_url") or DEFAULT_DATABASE_URL
    if not isinstance(database_url, str):
        raise ConfigError("database_url", f"expected string, got {database_url!r}")
    return OrderboxConfig(
        sync=parse_sync(_section(data, "sync")),
        parse=parse_parse(_section(data, "parse")),
        enrichment=parse_enrichment(_section(data, "enrichment")),
        database_url=database_url,
    )


def save_config(path: Path, config: OrderboxConfig) -> None:
    """Write ``config`` as YAML, creating parent directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(asdict(config), f, sort_keys=False)


def load_config(path: Path) -> OrderboxConfig:
    """
    Load configuration from ``path``.

    When the file does not exist a default configuration is written there
    and returned, so the user has a file to edit.
    """
    path = Path(path)
    if not path.exists():
        config = OrderboxConfig()
        save_config(path, config)
        logger.info("config_default_written", extra={"path": path})
        return config

    config = parse_config(load_yaml_file(path))
    logger.info(
        "config_loaded",
        extra={
            "path": path,
            "sync_batch_size": config.sync.batch_size,
            "parse_batch_size": config.parse.batch_size,
            "enrichment_batch_size": config.enrichment.batch_size,
        },
    )
    return config

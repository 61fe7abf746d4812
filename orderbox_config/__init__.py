"""
orderbox_config -- YAML-backed runtime configuration.

The kernel MUST NEVER import from ``orderbox_config``; the batch layer
receives a parsed ``OrderboxConfig`` from its caller.
"""

from orderbox_config.loader import (
    clamp_batch_size,
    load_config,
    parse_config,
    save_config,
)
from orderbox_config.schema import (
    EnrichmentConfig,
    OrderboxConfig,
    ParseConfig,
    SyncConfig,
)

__all__ = [
    "EnrichmentConfig",
    "OrderboxConfig",
    "ParseConfig",
    "SyncConfig",
    "clamp_batch_size",
    "load_config",
    "parse_config",
    "save_config",
]

"""
Runtime configuration schema.

Frozen dataclasses, one per job type plus the top-level ``OrderboxConfig``.
The loader fills them from YAML; defaults here are the values used when a
key is absent.
"""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_DATABASE_URL = "sqlite:///orderbox.db"


# ---------------------------------------------------------------------------
# Per-job settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncConfig:
    """Mailbox synchronization."""

    batch_size: int = 50
    max_results_per_page: int = 100  # clamped to 1..500
    timeout_minutes: int = 30  # 1..120
    max_total: int | None = None  # cap on ids listed per run; None = all


@dataclass(frozen=True)
class ParseConfig:
    """Email parsing."""

    batch_size: int = 100


@dataclass(frozen=True)
class EnrichmentConfig:
    """Product name enrichment through the external API."""

    batch_size: int = 10  # clamped to 1..50
    delay_seconds: int = 10  # clamped to 0..60
    api_batch_size: int = 10
    api_delay_seconds: int = 0

    @property
    def delay_ms(self) -> int:
        return self.delay_seconds * 1000


# ---------------------------------------------------------------------------
# Top level
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderboxConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    parse: ParseConfig = field(default_factory=ParseConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    database_url: str = DEFAULT_DATABASE_URL

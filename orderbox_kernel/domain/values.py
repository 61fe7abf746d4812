"""
Frozen value objects exchanged between repositories and batch tasks.

ZERO I/O.  Repositories return these instead of live ORM rows so a value
can cross a session (and a thread) boundary safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class ShopSettingInfo:
    id: int
    shop_name: str
    sender_address: str
    parser_type: str
    is_enabled: bool = True
    subject_filters: tuple[str, ...] = ()


@dataclass(frozen=True)
class MailMessage:
    """A message as fetched from the mailbox provider."""

    message_id: str
    body_plain: str | None = None
    body_html: str | None = None
    from_address: str | None = None
    subject: str | None = None
    internal_date: int | None = None


@dataclass(frozen=True)
class EmailRow:
    """A stored email awaiting parsing."""

    id: int
    message_id: str
    body_plain: str
    from_address: str
    subject: str | None = None
    internal_date: int | None = None


@dataclass(frozen=True)
class OrderLine:
    name: str
    unit_price: int = 0
    quantity: int = 1


@dataclass(frozen=True)
class OrderInfo:
    """An order extracted from a confirmation or shipping mail."""

    order_number: str
    order_date: datetime | None = None
    items: tuple[OrderLine, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CancelInfo:
    """A cancellation extracted from a cancel mail."""

    order_number: str
    product_name: str
    cancel_quantity: int = 1


@dataclass(frozen=True)
class ParsedProduct:
    """Structured fields the enrichment API derived from a raw product name."""

    maker: str | None = None
    series: str | None = None
    name: str | None = None
    scale: str | None = None
    is_reissue: bool = False

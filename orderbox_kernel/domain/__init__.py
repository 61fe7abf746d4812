"""Pure kernel domain helpers.  ZERO I/O except ``SystemClock``."""

from orderbox_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from orderbox_kernel.domain.text import normalize_product_name
from orderbox_kernel.domain.values import (
    CancelInfo,
    EmailRow,
    MailMessage,
    OrderInfo,
    OrderLine,
    ParsedProduct,
    ShopSettingInfo,
)

__all__ = [
    "CancelInfo",
    "Clock",
    "DeterministicClock",
    "EmailRow",
    "MailMessage",
    "OrderInfo",
    "OrderLine",
    "ParsedProduct",
    "ShopSettingInfo",
    "SystemClock",
    "normalize_product_name",
]

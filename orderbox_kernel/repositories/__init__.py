"""Repositories: session-per-call persistence returning frozen values."""

from orderbox_kernel.repositories.base import BaseRepository
from orderbox_kernel.repositories.emails import EmailRepository
from orderbox_kernel.repositories.orders import OrderRepository, item_names_match
from orderbox_kernel.repositories.products import ProductRepository
from orderbox_kernel.repositories.shop_settings import ShopSettingsRepository

__all__ = [
    "BaseRepository",
    "EmailRepository",
    "OrderRepository",
    "ProductRepository",
    "ShopSettingsRepository",
    "item_names_match",
]

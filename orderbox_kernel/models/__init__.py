"""ORM models.  Importing this package registers every table on ``Base.metadata``."""

from orderbox_kernel.models.email import AnalysisStatus, Email
from orderbox_kernel.models.order import Order, OrderItem, OrderStatus
from orderbox_kernel.models.product import ProductMaster
from orderbox_kernel.models.shop import ShopSetting, parse_subject_filters

__all__ = [
    "AnalysisStatus",
    "Email",
    "Order",
    "OrderItem",
    "OrderStatus",
    "ProductMaster",
    "ShopSetting",
    "parse_subject_filters",
]

"""
Module: orderbox_kernel.models.order
Responsibility: ORM persistence for parsed orders and their line items.
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderbox_kernel.db.base import TimestampedBase


class OrderStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class Order(TimestampedBase):
    """
    An order reconstructed from one or more shop mails.

    Guarantees:
        - (shop_domain, order_number) identifies an order; a later mail for
          the same pair updates the existing row instead of duplicating it.
    """

    __tablename__ = "orders"

    __table_args__ = (
        Index("idx_orders_shop_order_number", "shop_domain", "order_number"),
        Index("idx_orders_order_date", "order_date"),
    )

    shop_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    shop_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    order_number: Mapped[str] = mapped_column(String(100), nullable=False)
    order_date: Mapped[datetime | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=OrderStatus.ACTIVE.value, nullable=False,
    )
    source_email_id: Mapped[int | None] = mapped_column(
        ForeignKey("emails.id"), nullable=True,
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    def __repr__(self) -> str:
        return f"<Order {self.shop_domain}:{self.order_number} {self.status}>"


class OrderItem(TimestampedBase):
    """A line item of an order."""

    __tablename__ = "order_items"

    __table_args__ = (
        Index("idx_order_items_order_id", "order_id"),
        Index("idx_order_items_item_name", "item_name"),
        Index("idx_order_items_item_name_normalized", "item_name_normalized"),
    )

    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False,
    )
    item_name: Mapped[str] = mapped_column(String(500), nullable=False)
    item_name_normalized: Mapped[str | None] = mapped_column(
        String(500), nullable=True,
    )
    price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    order: Mapped[Order] = relationship("Order", back_populates="items")

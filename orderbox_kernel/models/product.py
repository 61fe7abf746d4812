"""
Module: orderbox_kernel.models.product
Responsibility: ORM persistence for enriched product names.  Acts as the
    local cache in front of the enrichment API: ``raw_name`` is the cache
    key, ``normalized_name`` the fallback key.
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from orderbox_kernel.db.base import TimestampedBase


class ProductMaster(TimestampedBase):
    """One enrichment result per distinct raw product name."""

    __tablename__ = "product_master"

    __table_args__ = (
        Index("idx_product_master_normalized_name", "normalized_name"),
    )

    raw_name: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    normalized_name: Mapped[str] = mapped_column(String(500), nullable=False)
    maker: Mapped[str | None] = mapped_column(String(200), nullable=True)
    series: Mapped[str | None] = mapped_column(String(300), nullable=True)
    product_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    scale: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_reissue: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    platform_hint: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<ProductMaster {self.raw_name!r}>"

"""
Module: orderbox_kernel.models.shop
Responsibility: ORM persistence for shop settings -- which sender addresses
    are synced and which parser grammar handles their mails.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/values.py.
"""

import json

from sqlalchemy import Boolean, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from orderbox_kernel.db.base import TimestampedBase
from orderbox_kernel.domain.values import ShopSettingInfo


class ShopSetting(TimestampedBase):
    """
    Sender address -> parser routing entry.

    Contract:
        ``subject_filters`` is a JSON array of substrings stored as text.
        NULL, an empty array, or text that is not valid JSON all mean
        "no filter" (every subject passes).

    Guarantees:
        - (sender_address, parser_type) is unique; the same sender may be
          routed to several parsers (confirm / send / cancel mails).
    """

    __tablename__ = "shop_settings"

    __table_args__ = (
        UniqueConstraint(
            "sender_address", "parser_type", name="uq_shop_sender_parser",
        ),
        Index("idx_shop_settings_sender_address", "sender_address"),
    )

    shop_name: Mapped[str] = mapped_column(String(200), nullable=False)
    sender_address: Mapped[str] = mapped_column(String(320), nullable=False)
    parser_type: Mapped[str] = mapped_column(String(100), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    subject_filters: Mapped[str | None] = mapped_column(Text, nullable=True)

    def get_subject_filters(self) -> list[str]:
        return parse_subject_filters(self.subject_filters)

    def to_dto(self) -> ShopSettingInfo:
        return ShopSettingInfo(
            id=self.id,
            shop_name=self.shop_name,
            sender_address=self.sender_address,
            parser_type=self.parser_type,
            is_enabled=self.is_enabled,
            subject_filters=tuple(self.get_subject_filters()),
        )

    def __repr__(self) -> str:
        return (
            f"<ShopSetting {self.shop_name} {self.sender_address} "
            f"parser={self.parser_type}>"
        )


def parse_subject_filters(raw: str | None) -> list[str]:
    """Decode a ``subject_filters`` column value; malformed JSON means no filter."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]

"""Shop settings repository: which senders to sync and which parser handles them."""

import json

from sqlalchemy import select

from orderbox_kernel.domain.values import ShopSettingInfo
from orderbox_kernel.logging_config import get_logger
from orderbox_kernel.models.shop import ShopSetting
from orderbox_kernel.repositories.base import BaseRepository

logger = get_logger("repositories.shop_settings")


class ShopSettingsRepository(BaseRepository):
    """Read and maintain ``shop_settings`` rows."""

    def add(
        self,
        shop_name: str,
        sender_address: str,
        parser_type: str,
        subject_filters: list[str] | None = None,
        is_enabled: bool = True,
    ) -> int:
        with self._scope("add_shop_setting") as session:
            row = ShopSetting(
                shop_name=shop_name,
                sender_address=sender_address,
                parser_type=parser_type,
                subject_filters=(
                    json.dumps(subject_filters, ensure_ascii=False)
                    if subject_filters else None
                ),
                is_enabled=is_enabled,
            )
            session.add(row)
            session.flush()
            logger.info(
                "shop_setting_added",
                extra={
                    "shop_name": shop_name,
                    "sender_address": sender_address,
                    "parser_type": parser_type,
                },
            )
            return row.id

    def set_enabled(self, setting_id: int, is_enabled: bool) -> None:
        with self._scope("set_shop_enabled") as session:
            row = session.get(ShopSetting, setting_id)
            if row is not None:
                row.is_enabled = is_enabled

    def get_enabled(self) -> list[ShopSettingInfo]:
        """All enabled settings, ordered by id."""
        with self._scope("get_enabled_shop_settings") as session:
            rows = session.execute(
                select(ShopSetting)
                .where(ShopSetting.is_enabled.is_(True))
                .order_by(ShopSetting.id)
            ).scalars().all()
            return [row.to_dto() for row in rows]

    def list_all(self) -> list[ShopSettingInfo]:
        with self._scope("list_shop_settings") as session:
            rows = session.execute(
                select(ShopSetting).order_by(ShopSetting.id)
            ).scalars().all()
            return [row.to_dto() for row in rows]

"""
Module: orderbox_kernel.repositories.products
Responsibility: The ``product_master`` cache in front of the enrichment API,
    plus selection of item names that have no cache entry yet.
Architecture position: Kernel > Repositories.

Invariants enforced:
    - ``raw_name`` is the primary cache key; save_product upserts on it.
    - ``normalized_name`` is a fallback key only; several raw names may share
      one normalized name, in which case the oldest row wins a lookup.
"""

from sqlalchemy import select

from orderbox_kernel.domain.text import normalize_product_name
from orderbox_kernel.domain.values import ParsedProduct
from orderbox_kernel.logging_config import get_logger
from orderbox_kernel.models.order import OrderItem
from orderbox_kernel.models.product import ProductMaster
from orderbox_kernel.repositories.base import BaseRepository

logger = get_logger("repositories.products")

_IN_CLAUSE_CHUNK = 500


def _to_parsed(row: ProductMaster) -> ParsedProduct:
    return ParsedProduct(
        maker=row.maker,
        series=row.series,
        name=row.product_name,
        scale=row.scale,
        is_reissue=row.is_reissue,
    )


class ProductRepository(BaseRepository):
    """Bulk lookups and upserts on ``product_master``."""

    def find_by_raw_names(self, raw_names: list[str]) -> dict[str, ParsedProduct]:
        """Map each stored raw name to its parsed fields.  Misses are absent."""
        found: dict[str, ParsedProduct] = {}
        if not raw_names:
            return found
        unique = list(dict.fromkeys(raw_names))
        with self._scope("find_products_by_raw_names") as session:
            for start in range(0, len(unique), _IN_CLAUSE_CHUNK):
                chunk = unique[start:start + _IN_CLAUSE_CHUNK]
                for row in session.execute(
                    select(ProductMaster).where(ProductMaster.raw_name.in_(chunk))
                ).scalars():
                    found[row.raw_name] = _to_parsed(row)
        return found

    def find_by_normalized_names(
        self, normalized_names: list[str],
    ) -> dict[str, ParsedProduct]:
        """Map each stored normalized name to its parsed fields (oldest row wins)."""
        found: dict[str, ParsedProduct] = {}
        unique = [n for n in dict.fromkeys(normalized_names) if n]
        if not unique:
            return found
        with self._scope("find_products_by_normalized_names") as session:
            for start in range(0, len(unique), _IN_CLAUSE_CHUNK):
                chunk = unique[start:start + _IN_CLAUSE_CHUNK]
                for row in session.execute(
                    select(ProductMaster)
                    .where(ProductMaster.normalized_name.in_(chunk))
                    .order_by(ProductMaster.id)
                ).scalars():
                    found.setdefault(row.normalized_name, _to_parsed(row))
        return found

    def save_product(
        self,
        raw_name: str,
        normalized_name: str,
        parsed: ParsedProduct,
        platform_hint: str | None = None,
    ) -> int:
        """Insert or update the row for ``raw_name``.  Returns its id."""
        with self._scope("save_product") as session:
            row = session.execute(
                select(ProductMaster).where(ProductMaster.raw_name == raw_name)
            ).scalar_one_or_none()
            if row is None:
                row = ProductMaster(raw_name=raw_name)
                session.add(row)
            row.normalized_name = normalized_name
            row.maker = parsed.maker
            row.series = parsed.series
            row.product_name = parsed.name
            row.scale = parsed.scale
            row.is_reissue = parsed.is_reissue
            row.platform_hint = platform_hint
            session.flush()
            logger.debug(
                "product_saved",
                extra={"product_id": row.id, "raw_name": raw_name},
            )
            return row.id

    def list_unresolved_product_names(self, limit: int | None = None) -> list[str]:
        """
        Distinct order item names with no ``product_master`` entry under
        either key, sorted by name.
        """
        known_raw = select(ProductMaster.raw_name)
        stmt = (
            select(OrderItem.item_name)
            .where(OrderItem.item_name.not_in(known_raw))
            .group_by(OrderItem.item_name)
            .order_by(OrderItem.item_name)
        )
        with self._scope("list_unresolved_product_names") as session:
            candidates = list(session.execute(stmt).scalars())
            if not candidates:
                return []
            known_normalized = set(
                session.execute(select(ProductMaster.normalized_name)).scalars()
            )

        unresolved = [
            name for name in candidates
            if normalize_product_name(name) not in known_normalized
        ]
        if limit is not None:
            unresolved = unresolved[:limit]
        return unresolved

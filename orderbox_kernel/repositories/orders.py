"""
Module: orderbox_kernel.repositories.orders
Responsibility: Persisting parsed orders and applying cancellations.
Architecture position: Kernel > Repositories.

Invariants enforced:
    - (shop_domain, order_number) identifies an order.  Saving the same order
      twice merges: missing order_date is filled, new line items are appended,
      existing line items (same name) are left as they are.
    - apply_cancel is all-or-nothing: when the order or the line item cannot
      be found nothing is written and RepositoryError is raised, so the mail
      stays unresolved and is retried on the next parse run.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from orderbox_kernel.domain.text import normalize_product_name
from orderbox_kernel.domain.values import CancelInfo, OrderInfo, OrderLine
from orderbox_kernel.exceptions import RepositoryError
from orderbox_kernel.logging_config import get_logger
from orderbox_kernel.models.order import Order, OrderItem, OrderStatus
from orderbox_kernel.repositories.base import BaseRepository

logger = get_logger("repositories.orders")


def _find_order(
    session: Session, order_number: str, shop_domain: str | None,
) -> Order | None:
    stmt = select(Order).where(Order.order_number == order_number)
    if shop_domain:
        stmt = stmt.where(Order.shop_domain == shop_domain)
    else:
        stmt = stmt.where((Order.shop_domain.is_(None)) | (Order.shop_domain == ""))
    return session.execute(
        stmt.options(selectinload(Order.items)).order_by(Order.id).limit(1)
    ).scalar_one_or_none()


def item_names_match(
    product_name: str, item_name: str, item_name_normalized: str | None,
) -> bool:
    """
    Cancel-mail product names are often abbreviated or decorated differently
    from the confirmation mail.  Match exact, then containment either way,
    then containment on the normalized keys.
    """
    if product_name == item_name:
        return True
    if product_name and (product_name in item_name or item_name in product_name):
        return True
    wanted = normalize_product_name(product_name)
    have = item_name_normalized or normalize_product_name(item_name)
    return bool(wanted and have) and (wanted in have or have in wanted)


class OrderRepository(BaseRepository):
    """Write-side access to ``orders`` / ``order_items``."""

    def save_order(
        self,
        order_info: OrderInfo,
        email_id: int | None = None,
        shop_domain: str | None = None,
        shop_name: str | None = None,
    ) -> int:
        """Insert or merge an order.  Returns the order id."""
        with self._scope("save_order") as session:
            order = _find_order(session, order_info.order_number, shop_domain)
            created = order is None
            if order is None:
                order = Order(
                    order_number=order_info.order_number,
                    order_date=order_info.order_date,
                    shop_domain=shop_domain,
                    shop_name=shop_name,
                    source_email_id=email_id,
                )
                session.add(order)
            elif order_info.order_date is not None:
                order.order_date = order_info.order_date

            existing_names = {item.item_name for item in order.items}
            for line in order_info.items:
                if line.name in existing_names:
                    continue
                normalized = normalize_product_name(line.name)
                order.items.append(
                    OrderItem(
                        item_name=line.name,
                        item_name_normalized=normalized or None,
                        price=line.unit_price,
                        quantity=line.quantity,
                    )
                )
                existing_names.add(line.name)

            session.flush()
            logger.debug(
                "order_saved",
                extra={
                    "order_id": order.id,
                    "order_number": order_info.order_number,
                    "shop_domain": shop_domain,
                    "is_new": created,
                },
            )
            return order.id

    def apply_cancel(
        self,
        cancel_info: CancelInfo,
        email_id: int | None = None,
        shop_domain: str | None = None,
    ) -> int:
        """
        Reduce the matched line item's quantity; delete it at zero.

        An order whose last item is removed becomes ``cancelled``.

        Raises:
            RepositoryError: order or item not found, or non-positive quantity.
        """
        with self._scope("apply_cancel") as session:
            order = _find_order(session, cancel_info.order_number, shop_domain)
            if order is None:
                logger.warning(
                    "cancel_order_not_found",
                    extra={
                        "order_number": cancel_info.order_number,
                        "shop_domain": shop_domain,
                        "email_id": email_id,
                    },
                )
                raise RepositoryError(
                    "apply_cancel",
                    f"Order {cancel_info.order_number} not found for cancel",
                )

            if cancel_info.cancel_quantity <= 0:
                raise RepositoryError(
                    "apply_cancel",
                    f"Invalid cancel quantity {cancel_info.cancel_quantity} "
                    f"for product '{cancel_info.product_name}'",
                )

            product_name = cancel_info.product_name.strip()
            matched = next(
                (
                    item for item in order.items
                    if item_names_match(
                        product_name, item.item_name, item.item_name_normalized,
                    )
                ),
                None,
            )
            if matched is None:
                raise RepositoryError(
                    "apply_cancel",
                    f"Product '{product_name}' not found in order "
                    f"{cancel_info.order_number}",
                )

            new_quantity = matched.quantity - cancel_info.cancel_quantity
            if new_quantity <= 0:
                order.items.remove(matched)
            else:
                matched.quantity = new_quantity
            if not order.items:
                order.status = OrderStatus.CANCELLED.value

            session.flush()
            logger.info(
                "cancel_applied",
                extra={
                    "order_id": order.id,
                    "item_name": matched.item_name,
                    "remaining_quantity": max(new_quantity, 0),
                },
            )
            return order.id

    def get_order(
        self, order_number: str, shop_domain: str | None = None,
    ) -> OrderInfo | None:
        with self._scope("get_order") as session:
            order = _find_order(session, order_number, shop_domain)
            if order is None:
                return None
            return OrderInfo(
                order_number=order.order_number,
                order_date=order.order_date,
                items=tuple(
                    OrderLine(
                        name=item.item_name,
                        unit_price=item.price,
                        quantity=item.quantity,
                    )
                    for item in order.items
                ),
            )

    def get_status(
        self, order_number: str, shop_domain: str | None = None,
    ) -> str | None:
        with self._scope("get_order_status") as session:
            order = _find_order(session, order_number, shop_domain)
            return order.status if order is not None else None

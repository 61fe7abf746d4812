"""
Email parse task.

Turns stored shop mails into orders.  Candidate parsers come from shop
settings (sender address plus subject filters); each candidate is tried in
order until one succeeds.

Orders are saved inline inside ``process_batch`` rather than in
``after_batch``: a cancel mail later in the same chunk must see the order
its confirmation mail created.  A mail whose save or cancel fails is an
item failure and stays pending for the next run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from orderbox_kernel.domain.values import EmailRow, OrderInfo, ShopSettingInfo
from orderbox_kernel.logging_config import get_logger
from orderbox_kernel.repositories.emails import EmailRepository
from orderbox_kernel.repositories.orders import OrderRepository
from orderbox_kernel.repositories.shop_settings import ShopSettingsRepository

from orderbox_batch.domain.types import ItemResult
from orderbox_batch.tasks.base import BATCH_PROGRESS_CHANNEL, describe_exception
from orderbox_batch.tasks.mail_sync_tasks import extract_email_address
from orderbox_batch.tasks.parsers import ParseError, ParserRegistry

logger = get_logger("batch.tasks.parse")

EMAIL_PARSE_TASK_NAME = "Email parse"


class NoEnabledShopsError(RuntimeError):
    """Parsing needs at least one enabled shop setting."""


@dataclass(frozen=True)
class EmailParseInput:
    email_id: int
    message_id: str
    body: str
    from_address: str | None = None
    subject: str | None = None
    internal_date: int | None = None  # epoch ms

    @classmethod
    def from_row(cls, row: EmailRow) -> EmailParseInput:
        return cls(
            email_id=row.id,
            message_id=row.message_id,
            body=row.body_plain,
            from_address=row.from_address,
            subject=row.subject,
            internal_date=row.internal_date,
        )


@dataclass(frozen=True)
class EmailParseOutput:
    email_id: int
    order: OrderInfo
    shop_name: str
    shop_domain: str | None
    cancel_applied: bool = False


@dataclass
class EmailParseContext:
    orders: OrderRepository
    emails: EmailRepository
    shop_settings: ShopSettingsRepository
    parsers: ParserRegistry
    # Chunk cache, refreshed by before_batch
    enabled_shops: list[ShopSettingInfo] = field(default_factory=list)


def extract_domain(email: str) -> str | None:
    parts = email.split("@")
    if len(parts) != 2 or not parts[1]:
        return None
    return parts[1]


def sender_domain(from_address: str | None) -> str | None:
    if not from_address:
        return None
    address = extract_email_address(from_address)
    return extract_domain(address) if address else None


def get_candidate_parsers(
    shops: Sequence[ShopSettingInfo],
    from_address: str | None,
    subject: str | None,
) -> list[tuple[str, str]]:
    """
    (parser_type, shop_name) pairs whose sender matches exactly (ignoring
    case) and whose subject filters, if any, match the subject.
    """
    if not from_address:
        return []
    sender = extract_email_address(from_address)
    if sender is None:
        return []

    candidates: list[tuple[str, str]] = []
    for shop in shops:
        if shop.sender_address.lower() != sender:
            continue
        if shop.subject_filters:
            if subject is None:
                continue
            if not any(f in subject for f in shop.subject_filters):
                continue
        candidates.append((shop.parser_type, shop.shop_name))
    return candidates


def _with_receive_date(order: OrderInfo, internal_date: int | None) -> OrderInfo:
    if order.order_date is not None or internal_date is None:
        return order
    try:
        received = datetime.fromtimestamp(internal_date / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.warning("internal_date_invalid", extra={"internal_date": internal_date})
        return order
    return OrderInfo(
        order_number=order.order_number,
        order_date=received,
        items=order.items,
    )


class EmailParseTask:
    """``emails`` (pending) -> ``orders``."""

    name = EMAIL_PARSE_TASK_NAME
    event_channel = BATCH_PROGRESS_CHANNEL

    def before_batch(
        self, inputs: Sequence[EmailParseInput], context: EmailParseContext,
    ) -> None:
        shops = context.shop_settings.get_enabled()
        if not shops:
            raise NoEnabledShopsError("No enabled shop settings found")
        context.enabled_shops = shops
        logger.info("shop_settings_loaded", extra={"count": len(shops)})

    def process_batch(
        self, inputs: Sequence[EmailParseInput], context: EmailParseContext,
    ) -> list[ItemResult[EmailParseOutput]]:
        return [self._parse_one(item, context) for item in inputs]

    def _parse_one(
        self, item: EmailParseInput, context: EmailParseContext,
    ) -> ItemResult[EmailParseOutput]:
        candidates = get_candidate_parsers(
            context.enabled_shops, item.from_address, item.subject,
        )
        if not candidates:
            return ItemResult.failure(
                f"No matching parser for email {item.email_id} "
                f"(from: {item.from_address!r})"
            )

        domain = sender_domain(item.from_address)
        last_error = ""
        for parser_type, shop_name in candidates:
            parser = context.parsers.get(parser_type)
            if parser is None:
                logger.warning("parser_unknown", extra={"parser_type": parser_type})
                last_error = f"unknown parser type {parser_type}"
                continue

            if parser.is_cancel:
                try:
                    cancel = parser.parse_cancel(item.body)
                except ParseError as exc:
                    last_error = str(exc)
                    continue
                try:
                    context.orders.apply_cancel(cancel, item.email_id, domain)
                except Exception as exc:
                    logger.info(
                        "cancel_apply_failed",
                        extra={
                            "email_id": item.email_id,
                            "order_number": cancel.order_number,
                            "error": describe_exception(exc),
                        },
                    )
                    return ItemResult.failure(
                        f"Failed to apply cancel for email {item.email_id}: "
                        f"{describe_exception(exc)}"
                    )
                return ItemResult.success(
                    EmailParseOutput(
                        email_id=item.email_id,
                        order=OrderInfo(order_number=cancel.order_number),
                        shop_name=shop_name,
                        shop_domain=domain,
                        cancel_applied=True,
                    )
                )

            try:
                order = parser.parse(item.body)
            except ParseError as exc:
                last_error = str(exc)
                continue

            order = _with_receive_date(order, item.internal_date)
            try:
                order_id = context.orders.save_order(
                    order, item.email_id, domain, shop_name,
                )
            except Exception as exc:
                logger.error(
                    "order_save_failed",
                    extra={"email_id": item.email_id, "error": describe_exception(exc)},
                )
                return ItemResult.failure(f"Failed to save order: {describe_exception(exc)}")

            logger.debug(
                "order_saved_inline",
                extra={"email_id": item.email_id, "order_id": order_id},
            )
            return ItemResult.success(
                EmailParseOutput(
                    email_id=item.email_id,
                    order=order,
                    shop_name=shop_name,
                    shop_domain=domain,
                )
            )

        return ItemResult.failure(
            f"All parsers failed for email {item.email_id}: {last_error}"
        )

    def after_batch(
        self,
        batch_number: int,
        results: Sequence[ItemResult[EmailParseOutput]],
        context: EmailParseContext,
    ) -> None:
        parsed_ids = [
            r.output.email_id for r in results if r.ok and r.output is not None
        ]
        marked = context.emails.mark_parsed(parsed_ids)
        logger.info(
            "parse_batch_recorded",
            extra={
                "batch_number": batch_number,
                "parsed": len(parsed_ids),
                "failed": sum(1 for r in results if not r.ok),
                "marked": marked,
            },
        )

    def process(
        self, input: EmailParseInput, context: EmailParseContext,
    ) -> EmailParseOutput:
        result = self._parse_one(input, context)
        if not result.ok or result.output is None:
            raise ParseError(result.error or "No result")
        return result.output

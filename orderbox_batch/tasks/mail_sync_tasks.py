"""
Mailbox synchronization task.

Fetches messages listed by the mailbox provider, keeps only mails from
configured shop senders, and stores them for the parse job.

Hooks:
    before_batch  -- load enabled shop settings into the run's cache.
    process_batch -- two phases: metadata for every id, filtered by sender
                     and subject; full bodies only for the survivors.
    after_batch   -- bulk upsert of the non-filtered messages.  A storage
                     error is logged and the run continues; the ids are
                     listed again next sync.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Sequence

from orderbox_kernel.domain.values import MailMessage, ShopSettingInfo
from orderbox_kernel.logging_config import get_logger
from orderbox_kernel.repositories.emails import EmailRepository
from orderbox_kernel.repositories.shop_settings import ShopSettingsRepository

from orderbox_batch.domain.types import ItemResult
from orderbox_batch.tasks.base import BATCH_PROGRESS_CHANNEL, describe_exception

logger = get_logger("batch.tasks.mail_sync")

MAIL_SYNC_TASK_NAME = "Mail sync"

# Used when no shop sender is configured
FALLBACK_SUBJECT_QUERY = "in:anywhere subject:(order OR reservation OR thank you)"


class MailboxClient(Protocol):
    """The mailbox provider, seen from the sync job."""

    def list_message_ids(
        self, query: str, max_results: int, page_token: str | None,
    ) -> tuple[list[str], str | None]:
        """One page of message ids and the next page token (None at the end)."""
        ...

    def get_message_metadata(self, message_id: str) -> MailMessage:
        """Headers only (sender, subject, date); bodies are None."""
        ...

    def get_message(self, message_id: str) -> MailMessage:
        ...


# =============================================================================
# Pure helpers
# =============================================================================


def _is_simple_email(candidate: str) -> bool:
    parts = candidate.split("@")
    if len(parts) != 2:
        return False
    local, domain = parts
    if not local or not domain:
        return False
    return not any(c.isspace() for c in candidate)


def extract_email_address(from_header: str) -> str | None:
    """
    Lowercased address from a From header.

    Accepts "Name <user@host>" and bare "user@host"; anything else is None.
    """
    start = from_header.find("<")
    if start != -1:
        end = from_header.find(">", start + 1)
        if end != -1:
            candidate = from_header[start + 1:end].strip()
            if _is_simple_email(candidate):
                return candidate.lower()
    trimmed = from_header.strip()
    if trimmed and _is_simple_email(trimmed):
        return trimmed.lower()
    return None


def should_save_message(
    message: MailMessage, shops: Sequence[ShopSettingInfo],
) -> bool:
    """
    True when some shop's sender matches (case-insensitive) and either that
    shop has no subject filter or the subject contains one of its filters.
    The same sender may appear in several settings; any match is enough.
    """
    if not message.from_address:
        return False
    sender = extract_email_address(message.from_address)
    if sender is None:
        return False
    for shop in shops:
        if shop.sender_address.lower() != sender:
            continue
        if not shop.subject_filters:
            return True
        if message.subject and any(f in message.subject for f in shop.subject_filters):
            return True
    return False


def build_sync_query(sender_addresses: Sequence[str]) -> str:
    """Provider search query covering every folder for the given senders."""
    if not sender_addresses:
        logger.warning("sync_query_fallback_no_senders")
        return FALLBACK_SUBJECT_QUERY
    clauses = " OR ".join(f"from:{address}" for address in sender_addresses)
    return f"in:anywhere ({clauses})"


def fetch_all_message_ids(
    client: MailboxClient,
    query: str,
    max_results_per_page: int,
    max_total: int | None = None,
) -> list[str]:
    """Page through the listing until exhausted or ``max_total`` ids are collected."""
    all_ids: list[str] = []
    page_token: str | None = None
    while True:
        ids, next_token = client.list_message_ids(query, max_results_per_page, page_token)
        if not ids:
            break
        all_ids.extend(ids)
        if max_total is not None and len(all_ids) >= max_total:
            del all_ids[max_total:]
            break
        if next_token is None:
            break
        page_token = next_token

    logger.info(
        "message_ids_fetched",
        extra={"count": len(all_ids), "query": query[:50]},
    )
    return all_ids


# =============================================================================
# Task
# =============================================================================


@dataclass(frozen=True)
class MailSyncInput:
    message_id: str


@dataclass(frozen=True)
class MailSyncOutput:
    message: MailMessage
    filtered_out: bool = False


@dataclass
class MailSyncContext:
    client: MailboxClient
    emails: EmailRepository
    shop_settings: ShopSettingsRepository
    # Chunk cache, refreshed by before_batch
    enabled_shops: list[ShopSettingInfo] = field(default_factory=list)
    # Rows actually written, summed over chunks by after_batch
    saved_count: int = 0


class MailSyncTask:
    """Mailbox -> ``emails`` table."""

    name = MAIL_SYNC_TASK_NAME
    event_channel = BATCH_PROGRESS_CHANNEL

    def before_batch(
        self, inputs: Sequence[MailSyncInput], context: MailSyncContext,
    ) -> None:
        context.enabled_shops = context.shop_settings.get_enabled()
        logger.info(
            "shop_settings_loaded",
            extra={"count": len(context.enabled_shops)},
        )

    def process_batch(
        self, inputs: Sequence[MailSyncInput], context: MailSyncContext,
    ) -> list[ItemResult[MailSyncOutput]]:
        results: list[ItemResult[MailSyncOutput]] = []
        candidates: list[tuple[str, int]] = []

        # Phase 1: metadata and filtering
        for item in inputs:
            try:
                metadata = context.client.get_message_metadata(item.message_id)
            except Exception as exc:
                logger.warning(
                    "message_metadata_fetch_failed",
                    extra={"message_id": item.message_id, "error": describe_exception(exc)},
                )
                results.append(
                    ItemResult.failure(
                        f"Failed to fetch message {item.message_id}: "
                        f"{describe_exception(exc)}"
                    )
                )
                continue

            if should_save_message(metadata, context.enabled_shops):
                candidates.append((item.message_id, len(results)))
                results.append(ItemResult.success(MailSyncOutput(message=metadata)))
            else:
                results.append(
                    ItemResult.success(
                        MailSyncOutput(message=metadata, filtered_out=True)
                    )
                )

        logger.info(
            "metadata_phase_completed",
            extra={
                "total": len(inputs),
                "candidates": len(candidates),
                "failed": sum(1 for r in results if not r.ok),
            },
        )

        # Phase 2: full bodies for candidates only
        for message_id, index in candidates:
            try:
                full = context.client.get_message(message_id)
            except Exception as exc:
                logger.warning(
                    "message_fetch_failed",
                    extra={"message_id": message_id, "error": describe_exception(exc)},
                )
                results[index] = ItemResult.failure(
                    f"Failed to fetch message {message_id}: {describe_exception(exc)}"
                )
                continue
            results[index] = ItemResult.success(MailSyncOutput(message=full))

        return results

    def after_batch(
        self,
        batch_number: int,
        results: Sequence[ItemResult[MailSyncOutput]],
        context: MailSyncContext,
    ) -> None:
        messages = [
            r.output.message for r in results
            if r.ok and r.output is not None and not r.output.filtered_out
        ]
        if not messages:
            logger.info("batch_nothing_to_save", extra={"batch_number": batch_number})
            return
        try:
            saved, skipped = context.emails.save_messages(messages)
        except Exception:
            logger.error(
                "batch_save_failed",
                extra={"batch_number": batch_number, "message_count": len(messages)},
                exc_info=True,
            )
            return
        context.saved_count += saved
        logger.info(
            "batch_messages_saved",
            extra={"batch_number": batch_number, "saved": saved, "skipped": skipped},
        )

    def process(self, input: MailSyncInput, context: MailSyncContext) -> MailSyncOutput:
        return MailSyncOutput(message=context.client.get_message(input.message_id))


def create_sync_input(message_id: str) -> MailSyncInput:
    return MailSyncInput(message_id=message_id)

"""
Job launchers -- one entry point per job type.

Contract:
    Each ``run_*_job`` claims its job type, prepares the inputs, drives a
    ``BatchRunner`` and records the outcome on the job state.  Launchers
    are synchronous; ``BatchOrchestrator`` runs them on background threads.

Architecture: orderbox_batch (top-level).  Imports from orderbox_batch
    services/tasks, orderbox_config.schema and kernel repositories/logging.

Invariants enforced:
    - A conflicting launch emits one zero-count Error and leaves the running
      job's flags untouched.
    - Once claimed, the job type is released on every exit path
      (``running_guard``).
    - Exactly one terminal event per launch.  A preparation failure emits
      it here; otherwise the runner does.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Protocol, Sequence
from uuid import uuid4

from orderbox_config.loader import clamp_batch_size
from orderbox_config.schema import EnrichmentConfig, ParseConfig, SyncConfig
from orderbox_kernel.exceptions import BatchError
from orderbox_kernel.logging_config import LogContext, get_logger
from orderbox_kernel.repositories.emails import EmailRepository
from orderbox_kernel.repositories.orders import OrderRepository
from orderbox_kernel.repositories.products import ProductRepository
from orderbox_kernel.repositories.shop_settings import ShopSettingsRepository

from orderbox_batch.domain.events import Complete, Error, ProgressSink
from orderbox_batch.domain.types import BatchResult
from orderbox_batch.services.job_state import (
    JOB_ENRICHMENT,
    JOB_PARSE,
    JOB_SYNC,
    JobState,
)
from orderbox_batch.services.runner import BatchRunner
from orderbox_batch.tasks.base import describe_exception
from orderbox_batch.tasks.enrichment_tasks import (
    EnrichmentClient,
    ProductEnrichmentContext,
    ProductEnrichmentTask,
    create_enrichment_input,
)
from orderbox_batch.tasks.mail_sync_tasks import (
    MailboxClient,
    MailSyncContext,
    MailSyncTask,
    build_sync_query,
    create_sync_input,
    fetch_all_message_ids,
)
from orderbox_batch.tasks.parse_tasks import (
    EmailParseContext,
    EmailParseInput,
    EmailParseTask,
)
from orderbox_batch.tasks.parsers import ParserRegistry

logger = get_logger("batch.jobs")

MAX_RESULTS_PER_PAGE_LIMIT = 500

NO_NEW_MESSAGES_MESSAGE = "No new messages to sync"
NO_UNPARSED_EMAILS_MESSAGE = "No emails to parse"
NO_UNRESOLVED_PRODUCTS_MESSAGE = "No unresolved product names"

SYNC_NOTIFY_TITLE = "Mail sync finished"
PARSE_NOTIFY_TITLE = "Email parse finished"
ENRICHMENT_NOTIFY_TITLE = "Product name parse finished"

SYNC_CONFLICT_MESSAGE = "Sync is already in progress"
PARSE_CONFLICT_MESSAGE = "Parse is already running"
ENRICHMENT_CONFLICT_MESSAGE = "Product name parse is already running"

CONFLICT_MESSAGES = {
    JOB_SYNC: SYNC_CONFLICT_MESSAGE,
    JOB_PARSE: PARSE_CONFLICT_MESSAGE,
    JOB_ENRICHMENT: ENRICHMENT_CONFLICT_MESSAGE,
}


class Notifier(Protocol):
    """Desktop notification, or any other out-of-band user message."""

    def notify(self, title: str, body: str) -> None: ...


# =============================================================================
# Shared steps
# =============================================================================


def _emit(sink: ProgressSink, task: Any, event: Any) -> None:
    try:
        sink(task.event_channel, event)
    except Exception:
        logger.warning(
            "progress_emit_failed",
            extra={"channel": task.event_channel, "event": type(event).__name__},
            exc_info=True,
        )


def _claim(
    state: JobState,
    sink: ProgressSink,
    task: Any,
    already_claimed: bool,
    conflict_message: str,
) -> bool:
    if already_claimed or state.try_start():
        return True
    report_conflict(state, sink, task, conflict_message)
    return False


def report_conflict(
    state: JobState,
    sink: ProgressSink,
    task: Any,
    message: str | None = None,
) -> None:
    """Emit the zero-count Error for a refused launch.

    Does not touch the running job's flags.  ``message`` defaults to the
    job type's entry in CONFLICT_MESSAGES.
    """
    if message is None:
        message = CONFLICT_MESSAGES.get(
            state.job_type, f"{task.name} is already running",
        )
    logger.warning("job_launch_conflict", extra={"job_type": state.job_type})
    _emit(
        sink,
        task,
        Error(
            task_name=task.name,
            total_items=0,
            processed_count=0,
            success_count=0,
            failed_count=0,
            message=message,
        ),
    )


def _fail_setup(
    state: JobState, sink: ProgressSink, task: Any, message: str,
) -> None:
    logger.error("job_setup_failed", extra={"reason": message})
    state.set_error(message)
    _emit(
        sink,
        task,
        Error(
            task_name=task.name,
            total_items=0,
            processed_count=0,
            success_count=0,
            failed_count=0,
            message=message,
        ),
    )


def _complete_empty(sink: ProgressSink, task: Any, message: str) -> None:
    logger.info("job_nothing_to_do", extra={"reason": message})
    _emit(
        sink,
        task,
        Complete(
            task_name=task.name,
            total_items=0,
            success_count=0,
            failed_count=0,
            status_message=message,
        ),
    )


def _notify(notifier: Notifier | None, title: str, body: str) -> None:
    if notifier is None:
        return
    try:
        notifier.notify(title, body)
    except Exception:
        logger.warning("notification_failed", extra={"title": title}, exc_info=True)


def _drive(
    runner: BatchRunner[Any],
    state: JobState,
    sink: ProgressSink,
    inputs: Sequence[Any],
    context: Any,
) -> BatchResult[Any] | None:
    """Run to a terminal event; a BatchError is recorded, not raised."""
    try:
        return runner.run(sink, inputs, context, state.should_stop)
    except BatchError as exc:
        state.set_error(str(exc))
        logger.error("job_run_failed", extra={"error": str(exc)})
        return None


# =============================================================================
# Launchers
# =============================================================================


def run_sync_job(
    *,
    state: JobState,
    sink: ProgressSink,
    client_factory: Callable[[], MailboxClient],
    emails: EmailRepository,
    shop_settings: ShopSettingsRepository,
    config: SyncConfig,
    notifier: Notifier | None = None,
    already_claimed: bool = False,
    task: Any = None,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> BatchResult[Any] | None:
    """List new mailbox messages and store the shop mails among them.

    Returns the run's BatchResult, or None when the launch was refused, the
    preparation failed or the run ended in error.
    """
    task = task if task is not None else MailSyncTask()
    if not _claim(state, sink, task, already_claimed, SYNC_CONFLICT_MESSAGE):
        return None

    with state.running_guard(), LogContext.bind(
        job_type=state.job_type, run_id=str(uuid4()),
    ):
        try:
            client = client_factory()
        except Exception as exc:
            _fail_setup(
                state, sink, task,
                f"Failed to create mailbox client: {describe_exception(exc)}",
            )
            return None

        try:
            shops = shop_settings.get_enabled()
        except Exception as exc:
            _fail_setup(
                state, sink, task,
                f"Failed to fetch shop settings: {describe_exception(exc)}",
            )
            return None

        senders = list(dict.fromkeys(shop.sender_address for shop in shops))
        query = build_sync_query(senders)
        per_page = min(max(config.max_results_per_page, 1), MAX_RESULTS_PER_PAGE_LIMIT)

        try:
            message_ids = fetch_all_message_ids(client, query, per_page, config.max_total)
        except Exception as exc:
            _fail_setup(
                state, sink, task,
                f"Failed to list messages: {describe_exception(exc)}",
            )
            return None

        try:
            new_ids = emails.filter_new_message_ids(message_ids)
        except Exception as exc:
            _fail_setup(
                state, sink, task,
                f"Failed to check existing messages: {describe_exception(exc)}",
            )
            return None

        logger.info(
            "sync_inputs_prepared",
            extra={"listed": len(message_ids), "new": len(new_ids)},
        )
        if not new_ids:
            _complete_empty(sink, task, NO_NEW_MESSAGES_MESSAGE)
            _notify(notifier, SYNC_NOTIFY_TITLE, NO_NEW_MESSAGES_MESSAGE)
            return BatchResult()

        runner: BatchRunner[Any] = BatchRunner(
            task,
            clamp_batch_size(config.batch_size, SyncConfig.batch_size),
            0,
            sleep=sleep,
            monotonic=monotonic,
        ).with_timeout(config.timeout_minutes)
        context = MailSyncContext(
            client=client, emails=emails, shop_settings=shop_settings,
        )
        result = _drive(
            runner, state, sink, [create_sync_input(i) for i in new_ids], context,
        )

        if result is not None and not result.cancelled:
            _notify(
                notifier,
                SYNC_NOTIFY_TITLE,
                f"New mail imported: {context.saved_count}",
            )
        return result


def run_parse_job(
    *,
    state: JobState,
    sink: ProgressSink,
    orders: OrderRepository,
    emails: EmailRepository,
    shop_settings: ShopSettingsRepository,
    parsers: ParserRegistry,
    config: ParseConfig,
    notifier: Notifier | None = None,
    already_claimed: bool = False,
    task: Any = None,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> BatchResult[Any] | None:
    """Parse every pending email into orders."""
    task = task if task is not None else EmailParseTask()
    if not _claim(state, sink, task, already_claimed, PARSE_CONFLICT_MESSAGE):
        return None

    with state.running_guard(), LogContext.bind(
        job_type=state.job_type, run_id=str(uuid4()),
    ):
        try:
            shops = shop_settings.get_enabled()
        except Exception as exc:
            _fail_setup(
                state, sink, task,
                f"Failed to fetch shop settings: {describe_exception(exc)}",
            )
            return None
        if not shops:
            _fail_setup(state, sink, task, "No enabled shop settings found")
            return None

        try:
            rows = emails.get_unparsed_emails()
        except Exception as exc:
            _fail_setup(
                state, sink, task,
                f"Failed to fetch unparsed emails: {describe_exception(exc)}",
            )
            return None

        logger.info("parse_inputs_prepared", extra={"count": len(rows)})
        if not rows:
            _complete_empty(sink, task, NO_UNPARSED_EMAILS_MESSAGE)
            return BatchResult()

        runner: BatchRunner[Any] = BatchRunner(
            task,
            clamp_batch_size(config.batch_size, ParseConfig.batch_size),
            0,
            sleep=sleep,
            monotonic=monotonic,
        )
        context = EmailParseContext(
            orders=orders,
            emails=emails,
            shop_settings=shop_settings,
            parsers=parsers,
        )
        result = _drive(
            runner, state, sink, [EmailParseInput.from_row(r) for r in rows], context,
        )

        if result is not None and not result.cancelled:
            _notify(
                notifier,
                PARSE_NOTIFY_TITLE,
                f"Parsed: {result.success_count}, failed: {result.failed_count}",
            )
        return result


def run_enrichment_job(
    *,
    state: JobState,
    sink: ProgressSink,
    client_factory: Callable[[], EnrichmentClient],
    products: ProductRepository,
    config: EnrichmentConfig,
    notifier: Notifier | None = None,
    already_claimed: bool = False,
    task: Any = None,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> BatchResult[Any] | None:
    """Resolve item names missing from ``product_master`` through the API."""
    task = task if task is not None else ProductEnrichmentTask()
    if not _claim(
        state, sink, task, already_claimed, ENRICHMENT_CONFLICT_MESSAGE,
    ):
        return None

    with state.running_guard(), LogContext.bind(
        job_type=state.job_type, run_id=str(uuid4()),
    ):
        try:
            client = client_factory()
        except Exception as exc:
            _fail_setup(
                state, sink, task,
                f"Failed to create enrichment client: {describe_exception(exc)}",
            )
            return None

        try:
            names = products.list_unresolved_product_names()
        except Exception as exc:
            _fail_setup(
                state, sink, task,
                f"Failed to fetch product names: {describe_exception(exc)}",
            )
            return None

        logger.info("enrichment_inputs_prepared", extra={"count": len(names)})
        if not names:
            _complete_empty(sink, task, NO_UNRESOLVED_PRODUCTS_MESSAGE)
            return BatchResult()

        runner: BatchRunner[Any] = BatchRunner(
            task,
            clamp_batch_size(config.batch_size, EnrichmentConfig.batch_size),
            config.delay_ms,
            sleep=sleep,
            monotonic=monotonic,
        )
        context = ProductEnrichmentContext(
            client=client,
            products=products,
            api_batch_size=config.api_batch_size,
            api_delay_seconds=config.api_delay_seconds,
            sleep=sleep,
        )
        result = _drive(
            runner, state, sink, [create_enrichment_input(n) for n in names], context,
        )

        if result is not None and not result.cancelled:
            _notify(
                notifier,
                ENRICHMENT_NOTIFY_TITLE,
                f"Resolved: {result.success_count}, failed: {result.failed_count}",
            )
        return result

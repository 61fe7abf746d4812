"""
BatchOrchestrator -- DI container for the batch jobs.

Contract:
    Wires configuration, the session factory, repositories, job states, the
    event bus, the notifier and the remote-client factories in one place.
    ``launch()`` starts a job on a daemon thread; ``run()`` drives it on the
    caller's thread.  ``cancel()`` / ``status()`` / ``reset()`` are safe
    from any thread.

Architecture: orderbox_batch (top-level).  This is the canonical entry point
    for configuring and running batch jobs.

Invariants enforced:
    - ``launch()`` claims the job type before the thread starts, so a
      conflicting launch is rejected synchronously.
    - The launcher is built before the claim; a refused claim emits the
      conflict Error without entering the launcher.
    - One JobState per job type for the orchestrator's lifetime.
"""

from __future__ import annotations

import functools
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from orderbox_config.schema import OrderboxConfig
from orderbox_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
)
from orderbox_kernel.domain.clock import Clock, SystemClock
from orderbox_kernel.exceptions import ConfigError, JobAlreadyRunningError
from orderbox_kernel.logging_config import get_logger
from orderbox_kernel.repositories.emails import EmailRepository
from orderbox_kernel.repositories.orders import OrderRepository
from orderbox_kernel.repositories.products import ProductRepository
from orderbox_kernel.repositories.shop_settings import ShopSettingsRepository

from orderbox_batch.domain.events import ProgressSink
from orderbox_batch.domain.types import BatchResult, JobStatus
from orderbox_batch.jobs import (
    Notifier,
    report_conflict,
    run_enrichment_job,
    run_parse_job,
    run_sync_job,
)
from orderbox_batch.services.event_bus import EventBus, QueuedEventSink
from orderbox_batch.services.job_state import (
    JOB_ENRICHMENT,
    JOB_PARSE,
    JOB_SYNC,
    JobStateRegistry,
)
from orderbox_batch.tasks.base import TaskRegistry
from orderbox_batch.tasks.enrichment_tasks import EnrichmentClient, ProductEnrichmentTask
from orderbox_batch.tasks.mail_sync_tasks import MailboxClient, MailSyncTask
from orderbox_batch.tasks.parse_tasks import EmailParseTask
from orderbox_batch.tasks.parsers import ParserRegistry

logger = get_logger("batch.orchestrator")


def _default_task_registry() -> TaskRegistry:
    """Create a TaskRegistry pre-loaded with the three job tasks."""
    registry = TaskRegistry()
    registry.register(JOB_SYNC, MailSyncTask())
    registry.register(JOB_PARSE, EmailParseTask())
    registry.register(JOB_ENRICHMENT, ProductEnrichmentTask())
    return registry


def _unconfigured(key: str) -> Callable[[], Any]:
    def factory() -> Any:
        raise ConfigError(key, "no client factory configured")
    return factory


@dataclass(frozen=True)
class JobRunRecord:
    """Timestamps and counts of the most recent run of one job type."""

    job_type: str
    started_at: datetime
    finished_at: datetime | None = None
    success_count: int = 0
    failed_count: int = 0
    cancelled: bool = False
    error: str | None = None


class BatchOrchestrator:
    """DI container for the batch jobs.

    Contract:
        - ``from_config()`` initializes the engine from ``database_url``,
          creates the tables and returns a fully wired orchestrator.
        - Progress events go to ``event_bus``; subscribe per task channel.
        - With ``queued_events=True`` launchers publish through a
          QueuedEventSink, so a slow subscriber never delays a run;
          ``close()`` drains it.

    Non-goals:
        - Does NOT schedule runs; the caller decides when to launch.
        - Does NOT retry failed runs.
    """

    def __init__(
        self,
        config: OrderboxConfig,
        session_factory: Callable[[], Session],
        *,
        job_states: JobStateRegistry | None = None,
        event_bus: EventBus | None = None,
        notifier: Notifier | None = None,
        mailbox_client_factory: Callable[[], MailboxClient] | None = None,
        enrichment_client_factory: Callable[[], EnrichmentClient] | None = None,
        parsers: ParserRegistry | None = None,
        task_registry: TaskRegistry | None = None,
        clock: Clock | None = None,
        queued_events: bool = False,
    ) -> None:
        self._config = config
        self._session_factory = session_factory
        self._job_states = job_states or JobStateRegistry()
        self._event_bus = event_bus or EventBus()
        self._queued_sink = QueuedEventSink(self._event_bus) if queued_events else None
        self._sink: ProgressSink = self._queued_sink or self._event_bus
        self._notifier = notifier
        self._mailbox_client_factory = (
            mailbox_client_factory or _unconfigured("mailbox_client")
        )
        self._enrichment_client_factory = (
            enrichment_client_factory or _unconfigured("enrichment_client")
        )
        self._parsers = parsers if parsers is not None else ParserRegistry()
        self._task_registry = (
            task_registry if task_registry is not None else _default_task_registry()
        )
        self._clock = clock or SystemClock()

        self.emails = EmailRepository(session_factory)
        self.orders = OrderRepository(session_factory)
        self.products = ProductRepository(session_factory)
        self.shop_settings = ShopSettingsRepository(session_factory)

        self._threads: dict[str, threading.Thread] = {}
        self._records: dict[str, JobRunRecord] = {}
        self._records_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: OrderboxConfig,
        **kwargs: Any,
    ) -> BatchOrchestrator:
        """Create a fully wired orchestrator backed by ``config.database_url``.

        Keyword arguments are passed through to ``__init__``.
        """
        engine = init_engine_from_url(config.database_url)
        create_tables(engine)
        logger.info("orchestrator_initialized", extra={"database_url": config.database_url})
        return cls(config, get_session_factory(), **kwargs)

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    def _launcher(self, job_type: str) -> Callable[..., BatchResult[Any] | None]:
        state = self._job_states.get(job_type)
        common: dict[str, Any] = {
            "state": state,
            "sink": self._sink,
            "notifier": self._notifier,
            "task": self._task_registry.get(job_type),
        }
        if job_type == JOB_SYNC:
            return functools.partial(
                run_sync_job,
                client_factory=self._mailbox_client_factory,
                emails=self.emails,
                shop_settings=self.shop_settings,
                config=self._config.sync,
                **common,
            )
        if job_type == JOB_PARSE:
            return functools.partial(
                run_parse_job,
                orders=self.orders,
                emails=self.emails,
                shop_settings=self.shop_settings,
                parsers=self._parsers,
                config=self._config.parse,
                **common,
            )
        if job_type == JOB_ENRICHMENT:
            return functools.partial(
                run_enrichment_job,
                client_factory=self._enrichment_client_factory,
                products=self.products,
                config=self._config.enrichment,
                **common,
            )
        raise KeyError(f"No launcher for job type '{job_type}'")

    def run(self, job_type: str, *, already_claimed: bool = False) -> BatchResult[Any] | None:
        """Run ``job_type`` to completion on the calling thread.

        Returns None when the launch was refused, the preparation failed or
        the run ended in error; ``status()`` then carries the error.
        """
        launcher = self._launcher(job_type)
        if not already_claimed and not self._claim(job_type):
            return None
        return self._execute(job_type, launcher)

    def launch(self, job_type: str) -> bool:
        """Start ``job_type`` on a daemon thread.

        Returns False when the job type is already running; the conflict
        Error event has been emitted by then.
        """
        launcher = self._launcher(job_type)
        if not self._claim(job_type):
            return False

        thread = threading.Thread(
            target=self._run_in_thread,
            args=(job_type, launcher),
            name=f"orderbox-{job_type}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError:
            self._job_states.get(job_type).finish()
            raise
        self._threads[job_type] = thread
        logger.info("job_launched", extra={"job_type": job_type})
        return True

    def _claim(self, job_type: str) -> bool:
        state = self._job_states.get(job_type)
        try:
            state.start()
        except JobAlreadyRunningError:
            report_conflict(state, self._sink, self._task_registry.get(job_type))
            return False
        return True

    def _execute(
        self, job_type: str, launcher: Callable[..., BatchResult[Any] | None],
    ) -> BatchResult[Any] | None:
        started_at = self._clock.now()
        result = launcher(already_claimed=True)
        self._record(
            job_type, started_at, result, self._job_states.get(job_type).last_error,
        )
        return result

    def _run_in_thread(
        self, job_type: str, launcher: Callable[..., BatchResult[Any] | None],
    ) -> None:
        try:
            self._execute(job_type, launcher)
        except Exception as exc:
            # The launcher's running_guard has already released the job type
            self._job_states.get(job_type).set_error(str(exc))
            logger.exception("job_thread_failed", extra={"job_type": job_type})

    def wait(self, job_type: str, timeout: float | None = None) -> bool:
        """Join the last launched thread.  True when it has finished."""
        thread = self._threads.get(job_type)
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def cancel(self, job_type: str) -> None:
        self._job_states.get(job_type).request_cancel()

    def status(self, job_type: str) -> JobStatus:
        return self._job_states.get(job_type).snapshot()

    def statuses(self) -> dict[str, JobStatus]:
        return self._job_states.statuses()

    def reset(self, job_type: str) -> None:
        """Force the job type back to idle, clearing its last error."""
        self._job_states.get(job_type).force_idle()

    def close(self, timeout: float | None = 5.0) -> None:
        """Deliver any queued events and stop the delivery thread."""
        if self._queued_sink is not None:
            self._queued_sink.close(timeout=timeout)

    def last_run(self, job_type: str) -> JobRunRecord | None:
        with self._records_lock:
            return self._records.get(job_type)

    def _record(
        self,
        job_type: str,
        started_at: datetime,
        result: BatchResult[Any] | None,
        error: str | None,
    ) -> None:
        record = JobRunRecord(
            job_type=job_type,
            started_at=started_at,
            finished_at=self._clock.now(),
            success_count=result.success_count if result is not None else 0,
            failed_count=result.failed_count if result is not None else 0,
            cancelled=result.cancelled if result is not None else False,
            error=error if result is None else None,
        )
        with self._records_lock:
            self._records[job_type] = record

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> OrderboxConfig:
        return self._config

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def job_states(self) -> JobStateRegistry:
        return self._job_states

    @property
    def task_registry(self) -> TaskRegistry:
        return self._task_registry

    @property
    def parsers(self) -> ParserRegistry:
        return self._parsers

    @property
    def clock(self) -> Clock:
        return self._clock

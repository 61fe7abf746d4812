"""
Tests for orderbox_batch.orchestrator -- BatchOrchestrator.

Wiring, background launch, conflict rejection, cancel/reset/status and
run records, against in-memory SQLite.
"""

import threading

import pytest

from orderbox_config.schema import OrderboxConfig, SyncConfig
from orderbox_kernel.db.engine import reset_engine
from orderbox_kernel.domain.values import MailMessage
from orderbox_kernel.exceptions import TaskNotRegisteredError

from orderbox_batch.domain.events import Complete, Error
from orderbox_batch.domain.types import JobPhase
from orderbox_batch.orchestrator import BatchOrchestrator
from orderbox_batch.services.job_state import JOB_ENRICHMENT, JOB_PARSE, JOB_SYNC
from orderbox_batch.tasks.base import BATCH_PROGRESS_CHANNEL, TaskRegistry
from orderbox_batch.tasks.mail_sync_tasks import MailSyncTask

SENDER = "Hobby Shop <orders@hobby.example>"


def _mail(message_id):
    return MailMessage(
        message_id=message_id,
        body_plain="Order number: A-3001\nItem: Zaku II | 2,200 yen x 1\n",
        from_address=SENDER,
        subject="Order confirmation",
        internal_date=1_000,
    )


@pytest.fixture
def received():
    return []


@pytest.fixture
def orchestrator(session_factory, hobby_parsers, notifier, make_mailbox, deterministic_clock, received):
    orch = BatchOrchestrator(
        OrderboxConfig(sync=SyncConfig(batch_size=2)),
        session_factory,
        notifier=notifier,
        mailbox_client_factory=lambda: make_mailbox([_mail("m1"), _mail("m2")]),
        parsers=hobby_parsers,
        clock=deterministic_clock,
    )
    orch.event_bus.subscribe(BATCH_PROGRESS_CHANNEL, received.append)
    orch.shop_settings.add(
        "Hobby Shop", "orders@hobby.example", "hobby_confirm",
        subject_filters=["Order confirmation"],
    )
    return orch


class TestWiring:
    def test_default_task_registry(self, orchestrator):
        assert orchestrator.task_registry.list_job_types() == (
            JOB_ENRICHMENT, JOB_PARSE, JOB_SYNC,
        )
        assert isinstance(orchestrator.task_registry.get(JOB_SYNC), MailSyncTask)

    def test_all_job_types_idle(self, orchestrator):
        statuses = orchestrator.statuses()
        assert set(statuses) == {JOB_SYNC, JOB_PARSE, JOB_ENRICHMENT}
        assert all(s.phase == JobPhase.IDLE for s in statuses.values())

    def test_from_config_initializes_database(self, hobby_parsers):
        try:
            orch = BatchOrchestrator.from_config(
                OrderboxConfig(database_url="sqlite://"), parsers=hobby_parsers,
            )
            assert orch.emails.count() == 0
            assert orch.parsers is hobby_parsers
        finally:
            reset_engine()


class TestRun:
    def test_sync_then_parse(self, orchestrator, received, deterministic_clock):
        sync_result = orchestrator.run(JOB_SYNC)
        deterministic_clock.advance(5)
        parse_result = orchestrator.run(JOB_PARSE)

        assert sync_result.success_count == 2
        assert parse_result.success_count == 2
        assert orchestrator.orders.get_order("A-3001", "hobby.example") is not None
        assert sum(1 for e in received if isinstance(e, Complete)) == 2

        record = orchestrator.last_run(JOB_PARSE)
        assert record.success_count == 2
        assert record.started_at == deterministic_clock.now()
        assert record.error is None

    def test_unconfigured_client_fails_setup(self, orchestrator, received):
        assert orchestrator.run(JOB_ENRICHMENT) is None

        status = orchestrator.status(JOB_ENRICHMENT)
        assert status.phase == JobPhase.FAILED
        assert "enrichment_client" in status.last_error
        assert isinstance(received[-1], Error)
        assert orchestrator.last_run(JOB_ENRICHMENT).error == status.last_error

    def test_reset_clears_failure(self, orchestrator):
        orchestrator.run(JOB_ENRICHMENT)
        orchestrator.reset(JOB_ENRICHMENT)
        assert orchestrator.status(JOB_ENRICHMENT).phase == JobPhase.IDLE

    def test_unknown_job_type(self, orchestrator):
        with pytest.raises(KeyError):
            orchestrator.run("export")


class TestLaunch:
    def test_launch_runs_in_background(self, orchestrator, notifier):
        assert orchestrator.launch(JOB_SYNC) is True
        assert orchestrator.wait(JOB_SYNC, timeout=10)

        assert orchestrator.status(JOB_SYNC).phase == JobPhase.IDLE
        assert orchestrator.emails.count() == 2
        assert notifier.notifications == [("Mail sync finished", "New mail imported: 2")]
        assert orchestrator.last_run(JOB_SYNC).success_count == 2

    def test_conflicting_launch_rejected(self, orchestrator, session_factory, hobby_parsers, received):
        entered = threading.Event()
        release = threading.Event()

        class BlockingMailbox:
            def list_message_ids(self, query, max_results, page_token):
                entered.set()
                release.wait(timeout=10)
                return [], None

        blocking = BatchOrchestrator(
            OrderboxConfig(),
            session_factory,
            mailbox_client_factory=BlockingMailbox,
            parsers=hobby_parsers,
        )
        blocking.event_bus.subscribe(BATCH_PROGRESS_CHANNEL, received.append)

        assert blocking.launch(JOB_SYNC) is True
        assert entered.wait(timeout=10)
        try:
            assert blocking.launch(JOB_SYNC) is False
            assert blocking.status(JOB_SYNC).is_running
            conflict = received[-1]
            assert isinstance(conflict, Error)
            assert conflict.message == "Sync is already in progress"
        finally:
            release.set()
        assert blocking.wait(JOB_SYNC, timeout=10)
        assert not blocking.status(JOB_SYNC).is_running

    def test_cancel_sets_flag_on_running_job(self, orchestrator):
        state = orchestrator.job_states.get(JOB_PARSE)
        state.try_start()
        orchestrator.cancel(JOB_PARSE)
        assert orchestrator.status(JOB_PARSE).should_cancel

    def test_wait_without_launch(self, orchestrator):
        assert orchestrator.wait(JOB_PARSE) is True


class TestClaiming:
    @pytest.fixture
    def refused_once(self, orchestrator, monkeypatch):
        """Make the parse state refuse its first claim and accept any later one."""
        state = orchestrator.job_states.get(JOB_PARSE)
        answers = [False, True]
        calls = []

        def scripted_try_start():
            calls.append(len(calls))
            return answers[min(len(calls) - 1, len(answers) - 1)]

        monkeypatch.setattr(state, "try_start", scripted_try_start)
        return calls

    def test_refused_launch_does_not_claim_again(self, orchestrator, refused_once, received):
        assert orchestrator.launch(JOB_PARSE) is False

        assert refused_once == [0]
        assert isinstance(received[-1], Error)
        assert received[-1].message == "Parse is already running"
        status = orchestrator.status(JOB_PARSE)
        assert not status.is_running
        assert status.last_error is None
        assert orchestrator.last_run(JOB_PARSE) is None

    def test_refused_run_does_not_claim_again(self, orchestrator, refused_once, received):
        assert orchestrator.run(JOB_PARSE) is None

        assert refused_once == [0]
        assert [type(e) for e in received] == [Error]
        assert not orchestrator.status(JOB_PARSE).is_running
        assert orchestrator.last_run(JOB_PARSE) is None

    @pytest.fixture
    def sync_only(self, session_factory, hobby_parsers):
        registry = TaskRegistry()
        registry.register(JOB_SYNC, MailSyncTask())
        return BatchOrchestrator(
            OrderboxConfig(),
            session_factory,
            parsers=hobby_parsers,
            task_registry=registry,
        )

    def test_missing_task_fails_launch_before_claiming(self, sync_only):
        with pytest.raises(TaskNotRegisteredError):
            sync_only.launch(JOB_PARSE)

        assert not sync_only.status(JOB_PARSE).is_running
        assert sync_only.job_states.get(JOB_PARSE).try_start()

    def test_missing_task_fails_run_before_claiming(self, sync_only):
        with pytest.raises(TaskNotRegisteredError):
            sync_only.run(JOB_PARSE)

        assert not sync_only.status(JOB_PARSE).is_running


class TestQueuedEvents:
    def test_events_delivered_after_close(
        self, session_factory, hobby_parsers, make_mailbox, received,
    ):
        orch = BatchOrchestrator(
            OrderboxConfig(sync=SyncConfig(batch_size=2)),
            session_factory,
            mailbox_client_factory=lambda: make_mailbox([_mail("m1")]),
            parsers=hobby_parsers,
            queued_events=True,
        )
        orch.event_bus.subscribe(BATCH_PROGRESS_CHANNEL, received.append)
        orch.shop_settings.add("Hobby Shop", "orders@hobby.example", "hobby_confirm")

        try:
            result = orch.run(JOB_SYNC)
        finally:
            orch.close()

        assert result.success_count == 1
        assert isinstance(received[-1], Complete)
        assert received[-1].success_count == 1

    def test_close_without_queue_is_noop(self, orchestrator):
        orchestrator.close()
        assert orchestrator.run(JOB_SYNC).success_count == 2

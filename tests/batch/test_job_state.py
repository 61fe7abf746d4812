"""
Tests for orderbox_batch.services.job_state -- JobState / JobStateRegistry.

Mutual exclusion, cancellation flags, error retention, guard cleanup, and
start races under real threads.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from orderbox_kernel.exceptions import JobAlreadyRunningError

from orderbox_batch.domain.types import JobPhase
from orderbox_batch.services.job_state import (
    DEFAULT_JOB_TYPES,
    JOB_PARSE,
    JOB_SYNC,
    JobState,
    JobStateRegistry,
)


class TestStartFinish:
    def test_try_start_claims_idle_state(self):
        state = JobState("sync")
        assert state.try_start() is True
        assert state.is_running()

    def test_second_try_start_refused_and_state_untouched(self):
        state = JobState("sync")
        assert state.try_start()
        state.request_cancel()
        state.set_error("earlier failure")

        assert state.try_start() is False
        assert state.is_running()
        assert state.should_stop() is True
        assert state.last_error == "earlier failure"

    def test_start_raises_on_conflict(self):
        state = JobState("parse")
        state.start()
        with pytest.raises(JobAlreadyRunningError) as exc_info:
            state.start()
        assert exc_info.value.job_type == "parse"

    def test_try_start_resets_cancel_and_error(self):
        state = JobState("sync")
        state.try_start()
        state.request_cancel()
        state.set_error("boom")
        state.finish()

        assert state.try_start()
        assert state.should_stop() is False
        assert state.last_error is None

    def test_finish_keeps_last_error(self):
        state = JobState("sync")
        state.try_start()
        state.set_error("remote failed")
        state.finish()

        snapshot = state.snapshot()
        assert snapshot.phase == JobPhase.FAILED
        assert snapshot.last_error == "remote failed"
        assert not snapshot.is_running

    def test_force_idle_clears_everything(self):
        state = JobState("sync")
        state.try_start()
        state.request_cancel()
        state.set_error("stuck")
        state.force_idle()

        snapshot = state.snapshot()
        assert snapshot.phase == JobPhase.IDLE
        assert snapshot.last_error is None
        assert not snapshot.should_cancel


class TestSnapshot:
    def test_idle_snapshot(self):
        snapshot = JobState("enrichment").snapshot()
        assert snapshot.job_type == "enrichment"
        assert snapshot.phase == JobPhase.IDLE
        assert snapshot.is_running is False

    def test_running_snapshot(self):
        state = JobState("sync")
        state.try_start()
        state.request_cancel()
        snapshot = state.snapshot()
        assert snapshot.phase == JobPhase.RUNNING
        assert snapshot.should_cancel is True

    def test_clear_error(self):
        state = JobState("sync")
        state.set_error("x")
        state.clear_error()
        assert state.snapshot().phase == JobPhase.IDLE


class TestRunningGuard:
    def test_guard_releases_on_normal_exit(self):
        state = JobState("sync")
        state.try_start()
        with state.running_guard():
            assert state.is_running()
        assert not state.is_running()
        assert state.try_start()

    def test_guard_releases_on_exception(self):
        state = JobState("sync")
        state.try_start()
        with pytest.raises(RuntimeError):
            with state.running_guard():
                state.request_cancel()
                raise RuntimeError("task crashed")
        assert not state.is_running()
        assert state.should_stop() is False

    def test_guard_recovers_from_held_lock(self, captured_logs):
        state = JobState("sync", guard_lock_timeout=0.01)
        state.try_start()
        # Simulate an owner that died while holding the running lock
        state._running_lock.acquire()

        with state.running_guard():
            pass

        assert not state.is_running()
        assert state.try_start()
        assert any(
            r["message"] == "job_running_lock_recovered" for r in captured_logs()
        )

    def test_restart_during_release_keeps_new_cancel_request(self):
        state = JobState("sync")
        state.try_start()
        outcomes = []
        workers = []

        def claim_and_cancel():
            outcomes.append(state.try_start())
            state.request_cancel()

        def after_running_lock_released():
            worker = threading.Thread(target=claim_and_cancel)
            workers.append(worker)
            worker.start()
            # Give the new run every chance to slip in mid-release
            worker.join(timeout=0.2)

        state._running_lock = _HookedLock(
            state._running_lock, after_running_lock_released,
        )

        with state.running_guard():
            pass

        for worker in workers:
            worker.join(timeout=5)
        assert outcomes == [True]
        assert state.is_running()
        assert state.should_stop()


class _HookedLock:
    """Wraps a lock; calls ``on_release`` once after the first explicit release."""

    def __init__(self, lock, on_release):
        self._lock = lock
        self._on_release = on_release

    def acquire(self, *args, **kwargs):
        return self._lock.acquire(*args, **kwargs)

    def release(self):
        self._lock.release()
        callback, self._on_release = self._on_release, None
        if callback is not None:
            callback()

    def __enter__(self):
        return self._lock.__enter__()

    def __exit__(self, *exc):
        return self._lock.__exit__(*exc)


class TestConcurrency:
    def test_only_one_of_many_concurrent_starts_wins(self):
        state = JobState("sync")
        workers = 16
        barrier = threading.Barrier(workers)

        def contend() -> bool:
            barrier.wait()
            return state.try_start()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda _: contend(), range(workers)))

        assert outcomes.count(True) == 1
        assert state.is_running()

    def test_cancel_from_other_thread_is_observed(self):
        state = JobState("parse")
        state.try_start()
        requested = threading.Event()

        def ui_thread():
            state.request_cancel()
            requested.set()

        threading.Thread(target=ui_thread).start()
        assert requested.wait(timeout=5)
        assert state.should_stop()


class TestRegistry:
    def test_default_job_types(self):
        registry = JobStateRegistry()
        assert registry.job_types() == DEFAULT_JOB_TYPES
        assert registry.sync.job_type == JOB_SYNC
        assert registry.parse.job_type == JOB_PARSE
        assert JOB_SYNC in registry

    def test_same_instance_per_job_type(self):
        registry = JobStateRegistry()
        assert registry.get(JOB_SYNC) is registry.sync

    def test_job_types_are_independent(self):
        registry = JobStateRegistry()
        assert registry.sync.try_start()
        assert registry.parse.try_start()
        statuses = registry.statuses()
        assert statuses[JOB_SYNC].is_running
        assert statuses["enrichment"].is_running is False

    def test_unknown_job_type(self):
        with pytest.raises(KeyError, match="Unknown job type"):
            JobStateRegistry().get("export")

"""
JobState -- per-job-type mutual exclusion and cooperative cancellation.

Contract:
    One ``JobState`` per job type lives for the whole process.  A launcher
    calls ``try_start()`` (or ``start()``), then drives the run inside
    ``running_guard()``; the UI calls ``request_cancel()`` and
    ``snapshot()`` from any thread.

Architecture: orderbox_batch/services.  Imports from orderbox_batch.domain
    and kernel logging/exceptions only.

Invariants enforced:
    - At most one run per job type: is_running is set only by a successful
      try_start and cleared by finish / running_guard exit.
    - Lock order: any path holding more than one lock takes them in the
      order cancel -> running -> error.  Each flag has its own lock.
    - running_guard clears is_running on every exit path, including a
      running lock that cannot be acquired (left held by a crashed owner);
      that lock is replaced so the job type is restartable.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator, Iterable

from orderbox_kernel.exceptions import JobAlreadyRunningError
from orderbox_kernel.logging_config import get_logger

from orderbox_batch.domain.types import JobPhase, JobStatus

logger = get_logger("batch.job_state")

JOB_SYNC = "sync"
JOB_PARSE = "parse"
JOB_ENRICHMENT = "enrichment"
DEFAULT_JOB_TYPES = (JOB_SYNC, JOB_PARSE, JOB_ENRICHMENT)

# Upper bound on waiting for the running lock during guard cleanup
GUARD_LOCK_TIMEOUT_SECONDS = 1.0


class JobState:
    """Flags for one job type: is_running, should_cancel, last_error."""

    def __init__(
        self,
        job_type: str,
        guard_lock_timeout: float = GUARD_LOCK_TIMEOUT_SECONDS,
    ):
        self.job_type = job_type
        self._guard_lock_timeout = guard_lock_timeout
        self._cancel_lock = threading.Lock()
        self._running_lock = threading.Lock()
        self._error_lock = threading.Lock()
        self._should_cancel = False
        self._is_running = False
        self._last_error: str | None = None

    # -------------------------------------------------------------------------
    # Start / finish
    # -------------------------------------------------------------------------

    def try_start(self) -> bool:
        """Claim the job type.  False (and nothing changed) if already running."""
        with self._cancel_lock:
            with self._running_lock:
                if self._is_running:
                    logger.info("job_start_refused", extra={"job_type": self.job_type})
                    return False
                with self._error_lock:
                    self._is_running = True
                    self._should_cancel = False
                    self._last_error = None
        logger.info("job_started", extra={"job_type": self.job_type})
        return True

    def start(self) -> None:
        """Like ``try_start`` but raises JobAlreadyRunningError on conflict."""
        if not self.try_start():
            raise JobAlreadyRunningError(self.job_type)

    def finish(self) -> None:
        """Return to idle.  last_error is kept for status reporting."""
        with self._cancel_lock:
            with self._running_lock:
                self._is_running = False
                self._should_cancel = False

    def force_idle(self) -> None:
        """Operator reset: idle with no recorded error."""
        with self._cancel_lock:
            with self._running_lock:
                with self._error_lock:
                    self._is_running = False
                    self._should_cancel = False
                    self._last_error = None
        logger.warning("job_forced_idle", extra={"job_type": self.job_type})

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def request_cancel(self) -> None:
        """Ask the running job to stop at its next chunk boundary."""
        with self._cancel_lock:
            self._should_cancel = True
        logger.info("job_cancel_requested", extra={"job_type": self.job_type})

    def should_stop(self) -> bool:
        with self._cancel_lock:
            return self._should_cancel

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def is_running(self) -> bool:
        with self._running_lock:
            return self._is_running

    def set_error(self, message: str) -> None:
        with self._error_lock:
            self._last_error = message

    def clear_error(self) -> None:
        with self._error_lock:
            self._last_error = None

    @property
    def last_error(self) -> str | None:
        with self._error_lock:
            return self._last_error

    def snapshot(self) -> JobStatus:
        with self._cancel_lock:
            with self._running_lock:
                with self._error_lock:
                    running = self._is_running
                    cancel = self._should_cancel
                    error = self._last_error
        if running:
            phase = JobPhase.RUNNING
        elif error is not None:
            phase = JobPhase.FAILED
        else:
            phase = JobPhase.IDLE
        return JobStatus(
            job_type=self.job_type,
            phase=phase,
            is_running=running,
            should_cancel=cancel,
            last_error=error,
        )

    # -------------------------------------------------------------------------
    # Scoped cleanup
    # -------------------------------------------------------------------------

    @contextmanager
    def running_guard(self) -> Generator[JobState, None, None]:
        """Clear is_running when the block exits, however it exits.

        Enter after a successful ``try_start``.  Exceptions propagate.
        """
        try:
            yield self
        finally:
            self._release()

    def _release(self) -> None:
        # The cancel lock is held until both flags are cleared, so a new run
        # cannot claim the job type (and be cancelled) in between.
        with self._cancel_lock:
            if self._running_lock.acquire(timeout=self._guard_lock_timeout):
                try:
                    self._is_running = False
                    self._should_cancel = False
                finally:
                    self._running_lock.release()
            else:
                logger.warning(
                    "job_running_lock_recovered",
                    extra={"job_type": self.job_type},
                )
                self._should_cancel = False
                self._running_lock = threading.Lock()
                self._is_running = False
        logger.info("job_finished", extra={"job_type": self.job_type})


class JobStateRegistry:
    """One JobState per job type; created once per process and shared."""

    def __init__(self, job_types: Iterable[str] = DEFAULT_JOB_TYPES):
        self._states = {job_type: JobState(job_type) for job_type in job_types}

    def get(self, job_type: str) -> JobState:
        try:
            return self._states[job_type]
        except KeyError:
            raise KeyError(
                f"Unknown job type '{job_type}'. "
                f"Known: {sorted(self._states.keys())}"
            ) from None

    @property
    def sync(self) -> JobState:
        return self.get(JOB_SYNC)

    @property
    def parse(self) -> JobState:
        return self.get(JOB_PARSE)

    @property
    def enrichment(self) -> JobState:
        return self.get(JOB_ENRICHMENT)

    def job_types(self) -> tuple[str, ...]:
        return tuple(self._states.keys())

    def statuses(self) -> dict[str, JobStatus]:
        return {job_type: state.snapshot() for job_type, state in self._states.items()}

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._states

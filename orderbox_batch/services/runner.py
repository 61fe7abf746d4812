"""
BatchRunner -- chunked, cancellable, rate-limited execution of a BatchTask.

Contract:
    ``run()`` splits the inputs into chunks of ``batch_size`` and drives the
    task's hooks chunk by chunk, aggregating per-item outcomes and emitting
    progress events on the task's channel.

Architecture: orderbox_batch/services.  Imports from orderbox_batch.domain,
    orderbox_batch.tasks.base and kernel logging/exceptions.

Invariants enforced:
    - Exactly one terminal event (Complete | Error | Cancelled) per run.
    - One Progress event per successfully processed chunk.
    - len(outputs) == success_count; outputs keep input order.
    - processed_count <= total_items, equal on normal completion.
    - Cancellation and the run deadline are checked only at chunk
      boundaries, before the inter-chunk pause.  A started chunk always
      finishes.
    - A per-item failure never aborts the run.  A hook failure, a
      process_batch result-count mismatch, or an expired deadline always
      does, after emitting Error.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Generic, Sequence, TypeVar

from orderbox_kernel.exceptions import (
    BatchContractError,
    BatchHookError,
    BatchTimeoutError,
)
from orderbox_kernel.logging_config import LogContext, get_logger

from orderbox_batch.domain.events import (
    BatchEvent,
    Cancelled,
    Complete,
    Error,
    Progress,
    ProgressSink,
)
from orderbox_batch.domain.types import BatchResult, ItemResult
from orderbox_batch.tasks.base import (
    call_after_batch,
    call_before_batch,
    call_process_batch,
    describe_exception,
)

logger = get_logger("batch.runner")

OutputT = TypeVar("OutputT")

NOTHING_TO_DO_MESSAGE = "Nothing to process"


def chunked(inputs: Sequence[Any], size: int) -> list[Sequence[Any]]:
    """Consecutive slices of ``size``; the last may be shorter."""
    return [inputs[start:start + size] for start in range(0, len(inputs), size)]


class BatchRunner(Generic[OutputT]):
    """Drives one BatchTask over a list of inputs.

    Contract:
        - ``batch_size`` >= 1 (ValueError otherwise); ``delay_ms`` >= 0.
        - ``timeout_seconds`` (optional) bounds the whole run by wall clock.
        - ``sleep`` / ``monotonic`` are injectable for deterministic tests.

    Non-goals:
        - Does NOT retry hooks or items.
        - Does NOT adapt batch size or delay to failures.
        - Does NOT own job-state; the caller passes ``should_cancel``.
    """

    def __init__(
        self,
        task: Any,
        batch_size: int,
        delay_ms: int = 0,
        *,
        timeout_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {delay_ms}")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")
        self._task = task
        self._batch_size = batch_size
        self._delay_ms = delay_ms
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._monotonic = monotonic

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def delay_ms(self) -> int:
        return self._delay_ms

    @property
    def timeout_seconds(self) -> float | None:
        return self._timeout_seconds

    def with_timeout(self, minutes: float) -> BatchRunner[OutputT]:
        """Return a copy of this runner bounded to ``minutes`` of wall clock."""
        return BatchRunner(
            self._task,
            self._batch_size,
            self._delay_ms,
            timeout_seconds=minutes * 60,
            sleep=self._sleep,
            monotonic=self._monotonic,
        )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        progress_sink: ProgressSink,
        inputs: Sequence[Any],
        context: Any,
        should_cancel: Callable[[], bool],
    ) -> BatchResult[OutputT]:
        """Process ``inputs`` chunk by chunk.

        Returns:
            BatchResult.  ``cancelled`` is True when ``should_cancel`` stopped
            the run; cancellation is not an error.

        Raises:
            BatchHookError: before_batch or after_batch raised.
            BatchContractError: process_batch returned the wrong result count.
            BatchTimeoutError: the run outlived ``timeout_seconds``.
        """
        task_name = self._task.name
        channel = self._task.event_channel
        total = len(inputs)
        result: BatchResult[OutputT] = BatchResult()
        started = self._monotonic()

        def emit(event: BatchEvent) -> None:
            try:
                progress_sink(channel, event)
            except Exception:
                logger.warning(
                    "progress_emit_failed",
                    extra={"channel": channel, "event": type(event).__name__},
                    exc_info=True,
                )

        def fail(message: str) -> None:
            emit(
                Error(
                    task_name=task_name,
                    total_items=total,
                    processed_count=result.processed_count,
                    success_count=result.success_count,
                    failed_count=result.failed_count,
                    message=message,
                )
            )

        with LogContext.bind(task_name=task_name):
            logger.info(
                "batch_run_started",
                extra={
                    "total_items": total,
                    "batch_size": self._batch_size,
                    "delay_ms": self._delay_ms,
                    "timeout_seconds": self._timeout_seconds,
                },
            )

            if total == 0:
                emit(
                    Complete(
                        task_name=task_name,
                        total_items=0,
                        success_count=0,
                        failed_count=0,
                        status_message=NOTHING_TO_DO_MESSAGE,
                    )
                )
                logger.info("batch_run_empty")
                return result

            for batch_number, chunk in enumerate(
                chunked(inputs, self._batch_size), start=1,
            ):
                if should_cancel():
                    logger.info(
                        "batch_run_cancelled",
                        extra={
                            "batch_number": batch_number,
                            "processed_count": result.processed_count,
                        },
                    )
                    emit(
                        Cancelled(
                            task_name=task_name,
                            total_items=total,
                            processed_count=result.processed_count,
                            success_count=result.success_count,
                            failed_count=result.failed_count,
                        )
                    )
                    result.cancelled = True
                    return result

                if (
                    self._timeout_seconds is not None
                    and self._monotonic() - started >= self._timeout_seconds
                ):
                    error = BatchTimeoutError(task_name, self._timeout_seconds)
                    logger.error(
                        "batch_run_timed_out",
                        extra={
                            "batch_number": batch_number,
                            "processed_count": result.processed_count,
                        },
                    )
                    fail(str(error))
                    raise error

                if batch_number > 1 and self._delay_ms > 0:
                    logger.debug(
                        "batch_delay",
                        extra={"delay_ms": self._delay_ms, "next_batch": batch_number},
                    )
                    self._sleep(self._delay_ms / 1000)

                with LogContext.bind(batch_number=str(batch_number)):
                    self._run_chunk(
                        batch_number, chunk, context, result, fail, emit, total,
                    )

            emit(
                Complete(
                    task_name=task_name,
                    total_items=total,
                    success_count=result.success_count,
                    failed_count=result.failed_count,
                    status_message=(
                        f"Done: {result.success_count} succeeded, "
                        f"{result.failed_count} failed"
                    ),
                )
            )
            logger.info(
                "batch_run_completed",
                extra={
                    "total_items": total,
                    "success_count": result.success_count,
                    "failed_count": result.failed_count,
                },
            )
            return result

    def _run_chunk(
        self,
        batch_number: int,
        chunk: Sequence[Any],
        context: Any,
        result: BatchResult[OutputT],
        fail: Callable[[str], None],
        emit: Callable[[BatchEvent], None],
        total: int,
    ) -> None:
        task_name = self._task.name
        logger.info("batch_chunk_started", extra={"chunk_size": len(chunk)})

        try:
            call_before_batch(self._task, chunk, context)
        except Exception as exc:
            error = BatchHookError(
                task_name, "before_batch", batch_number, describe_exception(exc),
            )
            logger.error("batch_hook_failed", exc_info=True, extra={"hook": "before_batch"})
            fail(f"before_batch error: {describe_exception(exc)}")
            raise error from exc

        # process_batch reports per-item failures in its result list; an
        # exception escaping it is treated like a hook failure
        try:
            results: list[ItemResult[OutputT]] = call_process_batch(
                self._task, chunk, context,
            )
        except Exception as exc:
            error = BatchHookError(
                task_name, "process_batch", batch_number, describe_exception(exc),
            )
            logger.error("batch_hook_failed", exc_info=True, extra={"hook": "process_batch"})
            fail(f"process_batch error: {describe_exception(exc)}")
            raise error from exc

        if len(results) != len(chunk):
            error = BatchContractError(
                task_name, batch_number, len(chunk), len(results),
            )
            logger.error(
                "batch_contract_violated",
                extra={"expected": len(chunk), "actual": len(results)},
            )
            fail(str(error))
            raise error

        chunk_success = 0
        chunk_failed = 0
        for item in results:
            if item.ok:
                chunk_success += 1
            else:
                chunk_failed += 1
                logger.warning("batch_item_failed", extra={"error": item.error})
        result.success_count += chunk_success
        result.failed_count += chunk_failed

        try:
            call_after_batch(self._task, batch_number, results, context)
        except Exception as exc:
            error = BatchHookError(
                task_name, "after_batch", batch_number, describe_exception(exc),
            )
            logger.error("batch_hook_failed", exc_info=True, extra={"hook": "after_batch"})
            fail(f"after_batch error: {describe_exception(exc)}")
            raise error from exc

        result.outputs.extend(item.output for item in results if item.ok)

        emit(
            Progress(
                task_name=task_name,
                batch_number=batch_number,
                batch_size=len(chunk),
                total_items=total,
                processed_count=result.processed_count,
                success_count=result.success_count,
                failed_count=result.failed_count,
                status_message=(
                    f"Batch {batch_number} done: {chunk_success} succeeded, "
                    f"{chunk_failed} failed"
                ),
            )
        )
        logger.info(
            "batch_chunk_completed",
            extra={"chunk_success": chunk_success, "chunk_failed": chunk_failed},
        )

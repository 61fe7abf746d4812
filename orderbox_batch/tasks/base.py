"""
BatchTask protocol, hook dispatch helpers, and TaskRegistry.

Contract:
    ``BatchTask`` defines the interface every batch task implements.  Tasks
    are plain classes; nothing subclasses a shared base.  The three optional
    hooks (``before_batch``, ``process_batch``, ``after_batch``) are looked
    up with ``getattr`` by the runner, so a task defines only the ones it
    needs.
    ``TaskRegistry`` stores one task instance per job type.

Architecture:
    orderbox_batch/tasks.  Imports from orderbox_batch.domain and
    orderbox_kernel.exceptions only.

Invariants enforced:
    - ``default_process_batch`` returns exactly one ItemResult per input, in
      input order.  An exception raised by ``process`` becomes that item's
      failure and never escapes.
    - Task registry: one task per job type string.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence, TypeVar, runtime_checkable

from orderbox_kernel.exceptions import TaskNotRegisteredError
from orderbox_kernel.logging_config import get_logger

from orderbox_batch.domain.types import ItemResult

logger = get_logger("batch.tasks")

InputT = TypeVar("InputT", contravariant=True)
OutputT = TypeVar("OutputT", covariant=True)
ContextT = TypeVar("ContextT", contravariant=True)

# Default progress channel shared by the shipped tasks
BATCH_PROGRESS_CHANNEL = "batch-progress"


# =============================================================================
# BatchTask Protocol
# =============================================================================


@runtime_checkable
class BatchTask(Protocol[InputT, OutputT, ContextT]):
    """Protocol for batch task implementations.

    Contract:
        - ``name``: human-readable label used in logs and events.
        - ``event_channel``: channel progress events are emitted on.
        - ``process()``: processes ONE input; raises on failure.

    Optional hooks (define any subset):
        - ``before_batch(inputs, context) -> None``: bulk preparation for a
          chunk (e.g. warming a lookup cache).  Raising aborts the run.
        - ``process_batch(inputs, context) -> list[ItemResult]``: processes a
          whole chunk.  Must return one result per input, in input order.
        - ``after_batch(batch_number, results, context) -> None``: bulk
          persistence for a chunk.  Raising aborts the run.

    Non-goals:
        - Does NOT retry -- unresolved items are picked up by the next run's
          input selection.
    """

    @property
    def name(self) -> str: ...

    @property
    def event_channel(self) -> str: ...

    def process(self, input: InputT, context: ContextT) -> OutputT:
        """Process a single input.

        Raises:
            Exception: any failure; the runner records it as an item failure.
        """
        ...


# =============================================================================
# Hook dispatch
# =============================================================================


def describe_exception(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def default_process_batch(
    task: Any, inputs: Sequence[Any], context: Any,
) -> list[ItemResult[Any]]:
    """Map ``task.process`` over ``inputs``, turning exceptions into failures."""
    results: list[ItemResult[Any]] = []
    for item in inputs:
        try:
            results.append(ItemResult.success(task.process(item, context)))
        except Exception as exc:
            logger.debug(
                "item_process_failed",
                extra={"task_name": task.name, "error": describe_exception(exc)},
                exc_info=True,
            )
            results.append(ItemResult.failure(describe_exception(exc)))
    return results


def call_before_batch(task: Any, inputs: Sequence[Any], context: Any) -> None:
    hook = getattr(task, "before_batch", None)
    if hook is not None:
        hook(inputs, context)


def call_process_batch(
    task: Any, inputs: Sequence[Any], context: Any,
) -> list[ItemResult[Any]]:
    hook = getattr(task, "process_batch", None)
    if hook is None:
        return default_process_batch(task, inputs, context)
    return list(hook(inputs, context))


def call_after_batch(
    task: Any, batch_number: int, results: Sequence[ItemResult[Any]], context: Any,
) -> None:
    hook = getattr(task, "after_batch", None)
    if hook is not None:
        hook(batch_number, results, context)


# =============================================================================
# TaskRegistry
# =============================================================================


class TaskRegistry:
    """Registry mapping job type strings to BatchTask instances.

    Contract:
        - ``register()`` adds a task; raises ValueError on duplicate.
        - ``get()`` retrieves by job type; raises TaskNotRegisteredError.
        - ``list_job_types()`` returns all registered job types, sorted.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, BatchTask[Any, Any, Any]] = {}

    def register(self, job_type: str, task: BatchTask[Any, Any, Any]) -> None:
        """Register a task for ``job_type``.

        Raises:
            ValueError: If a task is already registered for ``job_type``.
        """
        if job_type in self._tasks:
            raise ValueError(f"Job type '{job_type}' is already registered")
        self._tasks[job_type] = task

    def get(self, job_type: str) -> BatchTask[Any, Any, Any]:
        try:
            return self._tasks[job_type]
        except KeyError:
            raise TaskNotRegisteredError(job_type, self.list_job_types()) from None

    def list_job_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._tasks.keys()))

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._tasks

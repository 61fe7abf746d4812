"""
orderbox_batch.domain.types -- Pure dataclasses for the batch engine.

ZERO I/O.

Invariants enforced:
    - An ``ItemResult`` is either a success carrying an output or a failure
      carrying a message, never both.
    - ``BatchResult.outputs`` holds successful outputs only, in input order,
      so ``len(outputs) == success_count``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

OutputT = TypeVar("OutputT")


# =============================================================================
# Per-item outcome
# =============================================================================


@dataclass(frozen=True)
class ItemResult(Generic[OutputT]):
    """Outcome of processing one input.  Build with ``success``/``failure``."""

    output: OutputT | None = None
    error: str | None = None

    @classmethod
    def success(cls, output: OutputT) -> ItemResult[OutputT]:
        return cls(output=output, error=None)

    @classmethod
    def failure(cls, error: str) -> ItemResult[Any]:
        return cls(output=None, error=error or "unknown error")

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# Run outcome
# =============================================================================


@dataclass
class BatchResult(Generic[OutputT]):
    """Aggregate of a run.  ``cancelled`` is set when the run stopped early on request."""

    outputs: list[OutputT] = field(default_factory=list)
    success_count: int = 0
    failed_count: int = 0
    cancelled: bool = False

    @property
    def processed_count(self) -> int:
        return self.success_count + self.failed_count


# =============================================================================
# Job status
# =============================================================================


class JobPhase(str, Enum):
    """Lifecycle of a job type: idle, running, or idle with a recorded error."""

    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


@dataclass(frozen=True)
class JobStatus:
    """Point-in-time view of a job type's state, safe to hand to a UI."""

    job_type: str
    phase: JobPhase
    is_running: bool
    should_cancel: bool
    last_error: str | None = None

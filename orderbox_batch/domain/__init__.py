"""Pure batch domain: result types, job status and progress events."""

from orderbox_batch.domain.events import (
    BatchEvent,
    Cancelled,
    Complete,
    Error,
    Progress,
    ProgressSink,
    progress_percent,
)
from orderbox_batch.domain.types import (
    BatchResult,
    ItemResult,
    JobPhase,
    JobStatus,
)

__all__ = [
    "BatchEvent",
    "BatchResult",
    "Cancelled",
    "Complete",
    "Error",
    "ItemResult",
    "JobPhase",
    "JobStatus",
    "Progress",
    "ProgressSink",
    "progress_percent",
]

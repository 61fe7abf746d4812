"""Batch engine services: runner, job-state guard, event delivery."""

from orderbox_batch.services.event_bus import EventBus, QueuedEventSink
from orderbox_batch.services.job_state import (
    DEFAULT_JOB_TYPES,
    JOB_ENRICHMENT,
    JOB_PARSE,
    JOB_SYNC,
    JobState,
    JobStateRegistry,
)
from orderbox_batch.services.runner import BatchRunner, chunked

__all__ = [
    "BatchRunner",
    "DEFAULT_JOB_TYPES",
    "EventBus",
    "JOB_ENRICHMENT",
    "JOB_PARSE",
    "JOB_SYNC",
    "JobState",
    "JobStateRegistry",
    "QueuedEventSink",
    "chunked",
]

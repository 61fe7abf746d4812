"""
orderbox_batch.tasks -- Task protocol, registry, and the concrete jobs.

``base.py`` imports only from orderbox_batch.domain and kernel logging /
exceptions.  The job modules use kernel repositories for persistence.
"""

from orderbox_batch.tasks.base import (
    BATCH_PROGRESS_CHANNEL,
    BatchTask,
    TaskRegistry,
    default_process_batch,
)

__all__ = [
    "BATCH_PROGRESS_CHANNEL",
    "BatchTask",
    "TaskRegistry",
    "default_process_batch",
]

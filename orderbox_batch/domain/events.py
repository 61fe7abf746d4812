"""
orderbox_batch.domain.events -- Progress events emitted by the batch runner.

Four shapes: ``Progress`` after each successful chunk, and exactly one of
``Complete`` / ``Error`` / ``Cancelled`` to end a run.  Every event renders
to the flat dict the UI consumes via ``to_payload()``; that dict is the
wire contract and its keys never change per shape.

Invariants enforced:
    - progress_percent is 0 when total_items is 0, else
      100 * processed_count / total_items.  ``Complete`` always reports 100.
    - Terminal payloads have batch_number = batch_size = 0 and is_complete.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Union

CANCELLED_ERROR = "Cancelled by user"
CANCELLED_STATUS = "Processing was cancelled"


def progress_percent(processed_count: int, total_items: int) -> float:
    if total_items == 0:
        return 0.0
    return 100.0 * processed_count / total_items


@dataclass(frozen=True)
class Progress:
    task_name: str
    batch_number: int
    batch_size: int
    total_items: int
    processed_count: int
    success_count: int
    failed_count: int
    status_message: str

    @property
    def progress_percent(self) -> float:
        return progress_percent(self.processed_count, self.total_items)

    @property
    def is_terminal(self) -> bool:
        return False

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "batch_number": self.batch_number,
            "batch_size": self.batch_size,
            "total_items": self.total_items,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "progress_percent": self.progress_percent,
            "status_message": self.status_message,
            "is_complete": False,
            "error": None,
        }


@dataclass(frozen=True)
class Complete:
    task_name: str
    total_items: int
    success_count: int
    failed_count: int
    status_message: str

    @property
    def processed_count(self) -> int:
        return self.total_items

    @property
    def progress_percent(self) -> float:
        return 100.0

    @property
    def is_terminal(self) -> bool:
        return True

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "batch_number": 0,
            "batch_size": 0,
            "total_items": self.total_items,
            "processed_count": self.total_items,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "progress_percent": 100.0,
            "status_message": self.status_message,
            "is_complete": True,
            "error": None,
        }


@dataclass(frozen=True)
class Error:
    task_name: str
    total_items: int
    processed_count: int
    success_count: int
    failed_count: int
    message: str

    @property
    def progress_percent(self) -> float:
        return progress_percent(self.processed_count, self.total_items)

    @property
    def is_terminal(self) -> bool:
        return True

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "batch_number": 0,
            "batch_size": 0,
            "total_items": self.total_items,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "progress_percent": self.progress_percent,
            "status_message": self.message,
            "is_complete": True,
            "error": self.message,
        }


@dataclass(frozen=True)
class Cancelled:
    task_name: str
    total_items: int
    processed_count: int
    success_count: int
    failed_count: int

    @property
    def progress_percent(self) -> float:
        return progress_percent(self.processed_count, self.total_items)

    @property
    def is_terminal(self) -> bool:
        return True

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "batch_number": 0,
            "batch_size": 0,
            "total_items": self.total_items,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "progress_percent": self.progress_percent,
            "status_message": CANCELLED_STATUS,
            "is_complete": True,
            "error": CANCELLED_ERROR,
        }


BatchEvent = Union[Progress, Complete, Error, Cancelled]

# (channel, event) -> None.  Must not block; exceptions are logged and dropped.
ProgressSink = Callable[[str, BatchEvent], None]

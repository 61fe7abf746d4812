"""
Property-based tests for BatchRunner using Hypothesis.

Invariants checked over arbitrary input sizes, batch sizes and failure sets:
- one Progress per chunk, exactly one terminal event
- success + failed = processed = total on completion
- outputs keep input order and len(outputs) == success_count
- cancelling after k chunks leaves processed = inputs of those k chunks
"""

import math

from hypothesis import given, settings
from hypothesis import strategies as st

from orderbox_batch.domain.events import Cancelled, Complete, Progress
from orderbox_batch.services.runner import BatchRunner


class FlakyDoubler:
    name = "Flaky doubler"
    event_channel = "flaky-progress"

    def __init__(self, fail_on):
        self.fail_on = fail_on

    def process(self, input, context):
        if input in self.fail_on:
            raise ValueError(f"bad item {input}")
        return input * 2


class EventLog:
    def __init__(self):
        self.events = []

    def __call__(self, channel, event):
        self.events.append(event)


@st.composite
def runs(draw):
    total = draw(st.integers(min_value=0, max_value=60))
    batch_size = draw(st.integers(min_value=1, max_value=15))
    fail_on = draw(st.sets(st.integers(min_value=0, max_value=max(total - 1, 0))))
    return list(range(total)), batch_size, frozenset(fail_on)


@given(run=runs())
@settings(max_examples=150)
def test_completed_run_accounting(run):
    inputs, batch_size, fail_on = run
    sink = EventLog()

    result = BatchRunner(FlakyDoubler(fail_on), batch_size).run(
        sink, inputs, None, lambda: False,
    )

    expected_failed = sum(1 for i in inputs if i in fail_on)
    assert result.failed_count == expected_failed
    assert result.success_count == len(inputs) - expected_failed
    assert result.processed_count == len(inputs)
    assert result.outputs == [i * 2 for i in inputs if i not in fail_on]

    progress = [e for e in sink.events if isinstance(e, Progress)]
    assert len(progress) == math.ceil(len(inputs) / batch_size)
    assert isinstance(sink.events[-1], Complete)
    assert sum(1 for e in sink.events if not isinstance(e, Progress)) == 1
    if progress:
        assert progress[-1].batch_size == len(inputs) - (len(progress) - 1) * batch_size


@given(run=runs(), stop_after=st.integers(min_value=0, max_value=5))
@settings(max_examples=150)
def test_cancelled_run_stops_at_chunk_boundary(run, stop_after):
    inputs, batch_size, fail_on = run
    sink = EventLog()

    def should_cancel():
        return sum(1 for e in sink.events if isinstance(e, Progress)) >= stop_after

    result = BatchRunner(FlakyDoubler(fail_on), batch_size).run(
        sink, inputs, None, should_cancel,
    )

    chunks = math.ceil(len(inputs) / batch_size)
    if not inputs or stop_after >= chunks:
        assert isinstance(sink.events[-1], Complete)
        assert result.processed_count == len(inputs)
        return

    assert result.cancelled
    assert isinstance(sink.events[-1], Cancelled)
    assert result.processed_count == stop_after * batch_size
    assert len(result.outputs) == result.success_count

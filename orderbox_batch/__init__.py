"""
orderbox_batch -- Batch job engine and the order-tracking jobs built on it.

Provides a chunked, cancellable, rate-limited runner for heterogeneous
tasks, a per-job-type mutual-exclusion guard, a progress-event protocol,
and three jobs: mailbox sync, email parse, and product name enrichment.

Architecture:
    orderbox_batch/ is a top-level package.  Nothing in orderbox_kernel/
    or orderbox_config/ imports from orderbox_batch.

Invariants:
    - Chunks of one run execute strictly sequentially.
    - At most one running instance per job type.
    - Exactly one terminal progress event per run.
    - Cancellation is observed only at chunk boundaries.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

RECONCILE_TOTAL = Counter(
    "opentofu_operator_reconcile_total",
    "Number of Workspace reconciliations",
    labelnames=("kind", "result"),
)

RECONCILE_DURATION = Histogram(
    "opentofu_operator_reconcile_duration_seconds",
    "Duration of Workspace reconciliations in seconds",
    labelnames=("kind",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

JOB_RUNS_TOTAL = Counter(
    "opentofu_operator_job_runs_total",
    "Total number of OpenTofu Jobs by action and outcome",
    labelnames=("action", "result"),
)

STATUS_CONFLICTS_TOTAL = Counter(
    "opentofu_operator_status_conflicts_total",
    "Status writes rejected because the Workspace changed concurrently",
    labelnames=("kind",),
)

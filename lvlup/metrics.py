"""
Prometheus Metrics

Process-wide counters and histograms for rollup, sync and lock activity.
Exposed by the worker when METRICS_PORT is set.
"""

from prometheus_client import Counter, Gauge, Histogram


# =============================================================================
# METRICS
# =============================================================================

ROLLUP_UNITS = Counter(
    "lvlup_rollup_units_total",
    "Rollup units (game x day or game x hour) processed",
    ["domain", "mode", "status"],
)

ROLLUP_DURATION = Histogram(
    "lvlup_rollup_unit_seconds",
    "Time spent aggregating one rollup unit",
    ["domain", "mode"],
)

MALFORMED_FACTS = Counter(
    "lvlup_malformed_facts_total",
    "Raw facts skipped because a required attribute is missing",
    ["domain"],
)

LOCK_SKIPS = Counter(
    "lvlup_lock_skips_total",
    "Job runs skipped because the lock was held elsewhere",
    ["job"],
)

JOB_RUNS = Counter(
    "lvlup_job_runs_total",
    "Scheduled job executions",
    ["job", "status"],
)

SYNC_ROWS = Counter(
    "lvlup_sync_rows_total",
    "Rows delivered to the analytical store",
    ["table"],
)

SYNC_CYCLES = Counter(
    "lvlup_sync_cycles_total",
    "Sync cycles by outcome",
    ["outcome"],
)

SYNC_LAG_SECONDS = Gauge(
    "lvlup_sync_watermark_lag_seconds",
    "Age of the sync watermark at the end of a cycle",
    ["table"],
)

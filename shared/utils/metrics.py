"""
shared/utils/metrics.py
Prometheus counters for ledger failures, admissions and reconciliation runs.
Exposed on /metrics by the instrumentator in main.py.
"""

from prometheus_client import Counter

LEDGER_FAILURES = Counter(
    "ledger_failures_total",
    "Failures surfaced by the booking ledger, by kind",
    ["kind"],
)

ADMISSIONS = Counter(
    "ledger_admissions_total",
    "Booking submissions by outcome",
    ["outcome"],
)

RECONCILIATION_RUNS = Counter(
    "ledger_reconciliation_runs_total",
    "Reconciliation runs by final state",
    ["state"],
)

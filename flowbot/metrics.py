"""Prometheus metrics for the execution engine."""

from prometheus_client import Counter
from prometheus_client import Histogram

EXECUTIONS_TOTAL = Counter(
    "flowbot_executions_total",
    "Finished agent executions",
    ["trigger_source", "status"],
)

STEP_FAILURES_TOTAL = Counter(
    "flowbot_step_failures_total",
    "Workflow steps that failed",
    ["step_kind", "error"],
)

TRIGGER_EVALUATIONS_TOTAL = Counter(
    "flowbot_trigger_evaluations_total",
    "Trigger evaluations performed by the scheduler",
    ["trigger_type", "outcome"],
)

EXECUTION_DURATION_SECONDS = Histogram(
    "flowbot_execution_duration_seconds",
    "Wall-clock duration of agent executions",
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "flowbot_webhook_deliveries_total",
    "Inbound webhook deliveries",
    ["matched"],
)

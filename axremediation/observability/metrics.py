"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

# Control loop metrics
TICKS = Counter(
    "remediation_ticks_total",
    "Total number of control-loop ticks",
    ["outcome"],
)

TICK_DURATION = Histogram(
    "remediation_tick_duration_seconds",
    "Duration of one evaluation pass over the catalog",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Rule metrics
RULES_EVALUATED = Counter(
    "remediation_rules_evaluated_total",
    "Total number of rule evaluations",
    ["rule_id"],
)

RULES_MATCHED = Counter(
    "remediation_rules_matched_total",
    "Total number of rule matches",
    ["rule_id"],
)

TRIGGERS_SKIPPED = Counter(
    "remediation_triggers_skipped_total",
    "Matches or evaluations skipped before execution",
    ["rule_id", "reason"],
)

CATALOG_RULES = Gauge(
    "remediation_catalog_rules",
    "Number of enabled rules in the current catalog snapshot",
)

CATALOG_CONFIG_ERRORS = Counter(
    "remediation_catalog_config_errors_total",
    "Rules excluded from the catalog because of configuration errors",
    ["rule_id"],
)

CATALOG_REFRESH_FAILURES = Counter(
    "remediation_catalog_refresh_failures_total",
    "Catalog refreshes that kept the last-known-good snapshot",
)

# Execution metrics
EXECUTIONS_STARTED = Counter(
    "remediation_executions_started_total",
    "Executions created",
    ["rule_id", "manual"],
)

EXECUTIONS_FINISHED = Counter(
    "remediation_executions_finished_total",
    "Executions that reached a terminal status",
    ["rule_id", "status"],
)

EXECUTIONS_RUNNING = Gauge(
    "remediation_executions_running",
    "Executions currently running in this process",
)

ACTION_DURATION = Histogram(
    "remediation_action_duration_seconds",
    "Action duration in seconds",
    ["action_type", "status"],
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0),
)

# Ledger metrics
LEDGER_WRITE_FAILURES = Counter(
    "remediation_ledger_write_failures_total",
    "Failed ledger write attempts",
)

LEDGER_FALLBACK_SIZE = Gauge(
    "remediation_ledger_fallback_size",
    "Terminal executions waiting in the in-process fallback buffer",
)

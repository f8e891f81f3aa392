"""Prometheus metrics for the wholesale matcher.

Defines and exposes operational metrics for monitoring and alerting.
"""

from prometheus_client import Counter, Histogram, Gauge

# Matching metrics
candidate_top_score = Histogram(
    "wholesale_matcher_candidate_top_score",
    "Total score of the best candidate per matched line item",
    buckets=[0, 15, 30, 50, 60, 65, 80, 90, 95, 100]
)

line_items_classified_total = Counter(
    "wholesale_matcher_line_items_classified_total",
    "Line items classified by the task runner",
    ["outcome"]  # outcome: confirmed|pending|low_confidence|no_candidates|error
)

# Task metrics
tasks_finished_total = Counter(
    "wholesale_matcher_tasks_finished_total",
    "Matching tasks that left the processing state",
    ["status"]  # status: review|completed|failed
)

task_duration_seconds = Histogram(
    "wholesale_matcher_task_duration_seconds",
    "Wall time of the automated matching pass in seconds",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0]
)

tasks_in_progress = Gauge(
    "wholesale_matcher_tasks_in_progress",
    "Matching tasks currently being processed by this worker"
)

# Memory metrics
memory_operations_total = Counter(
    "wholesale_matcher_memory_operations_total",
    "Memory store mutations",
    ["operation"]  # operation: create|confirm|usage|reassign|concurrent|reject|conflicted|deprecate|delete|learn_failed
)

# Review metrics
review_actions_total = Counter(
    "wholesale_matcher_review_actions_total",
    "Human review actions applied to matching records",
    ["action"]  # action: confirm|reject|clear
)

# Catalog collaborator metrics
price_propagation_failures_total = Counter(
    "wholesale_matcher_price_propagation_failures_total",
    "Wholesale price updates that failed and were skipped"
)


def record_candidate_score(score: float) -> None:
    candidate_top_score.observe(score)

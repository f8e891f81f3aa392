"""Observability module for the wholesale matcher.

Provides structured logging, request correlation, metrics and health checks.
"""

from .logging_config import configure_logging, get_logger
from .metrics import (
    candidate_top_score,
    line_items_classified_total,
    tasks_finished_total,
    task_duration_seconds,
    tasks_in_progress,
    memory_operations_total,
    review_actions_total,
    price_propagation_failures_total,
)
from .request_id import request_id_var, get_request_id, set_request_id, generate_request_id

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    # Metrics
    "candidate_top_score",
    "line_items_classified_total",
    "tasks_finished_total",
    "task_duration_seconds",
    "tasks_in_progress",
    "memory_operations_total",
    "review_actions_total",
    "price_propagation_failures_total",
    # Request ID
    "request_id_var",
    "get_request_id",
    "set_request_id",
    "generate_request_id",
]

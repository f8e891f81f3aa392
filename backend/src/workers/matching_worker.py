"""Matching worker - Celery tasks for the automated matching pass.

Tasks:
- matching.process_task: run one matching task to review/completed/failed
- memory.cleanup_stale: deprecate stale single-confirmation bindings (on demand)
"""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from celery import shared_task

from database import SessionLocal
from matching_tasks.runner import TaskNotFoundError, TaskRunner
from matching_tasks.status import StateTransitionError
from memory.service import MemoryStore
from observability.request_id import get_request_id, set_request_id
from .celery_app import celery_app

logger = logging.getLogger(__name__)


@shared_task(name="matching.process_task", bind=True)
def process_matching_task(self, task_id: str, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Run the automated matching pass of a task (background task).

    The runner records per-item and catalog failures on the task itself,
    so this task is not retried; a failed task is retried explicitly.

    Args:
        task_id: UUID string of the matching task
        request_id: Request id of the enqueuing request, for log correlation

    Returns:
        Dict with task_id, final status and progress counters
    """
    set_request_id(request_id)
    session = SessionLocal()
    try:
        task = TaskRunner(session).run(UUID(task_id))
        return {
            "task_id": str(task.id),
            "status": task.status,
            "processed": task.processed_items,
            "confirmed": task.confirmed_items,
            "pending": task.pending_items,
            "exception": task.exception_items,
        }
    except (TaskNotFoundError, StateTransitionError) as e:
        logger.warning(f"Matching task not run: {e}", extra={"task_id": task_id})
        return {"task_id": task_id, "status": "skipped", "error": str(e)}
    finally:
        session.close()
        set_request_id(None)


@shared_task(name="memory.cleanup_stale", bind=True)
def cleanup_stale_memory(self, older_than_days: Optional[int] = None) -> Dict[str, Any]:
    """Deprecate single-confirmation bindings not confirmed for a long time."""
    session = SessionLocal()
    try:
        deprecated = MemoryStore(session).cleanup_stale(older_than_days)
        logger.info(f"Stale memory cleanup deprecated {deprecated} bindings")
        return {"deprecated": deprecated}
    finally:
        session.close()


def enqueue_matching_task(task_id: UUID) -> None:
    """Hand a started task to a worker."""
    logger.info("Enqueueing matching task", extra={"task_id": task_id})
    process_matching_task.apply_async(
        kwargs={"task_id": str(task_id), "request_id": get_request_id()},
    )


__all__ = ["celery_app", "process_matching_task", "cleanup_stale_memory", "enqueue_matching_task"]

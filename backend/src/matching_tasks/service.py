"""Matching task services

This module provides services for:
- Submitting matching tasks with their line items
- Listing and inspecting tasks and their records
- Retrying failed tasks and deleting tasks
"""

import logging
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from catalog.service import TemplateNotFoundError
from config import settings
from models.matching_record import MatchingRecord
from models.matching_task import MatchingTask
from models.product import ProductTemplate
from .runner import TaskNotFoundError
from .status import RecordStatus, StateTransitionError, TaskStatus

logger = logging.getLogger(__name__)


class TaskServiceError(Exception):
    """Invalid task submission or operation."""
    pass


class RecordNotFoundError(Exception):
    """Matching record does not exist."""
    pass


class MatchingTaskService:
    """Service for the matching task lifecycle outside the automated pass."""

    @staticmethod
    def create_task(
        db: Session,
        template_id: UUID,
        items: List[Dict[str, Any]],
        actor_id: Optional[str] = None,
        description: Optional[str] = None,
        review_threshold: Optional[int] = None,
        auto_confirm_threshold: Optional[int] = None,
        source_filename: Optional[str] = None,
        artifact_path: Optional[str] = None,
    ) -> MatchingTask:
        """Submit a batch of wholesale line items for matching.

        Args:
            db: Database session
            template_id: Catalog template to match against
            items: Submitted line items (row dicts)
            actor_id: Submitting actor
            description: Free-text description
            review_threshold: Minimum score for a reviewer suggestion
            auto_confirm_threshold: Minimum score for automatic confirmation
            source_filename: Name of the uploaded sheet, if any
            artifact_path: Temporary input artifact removed after processing

        Returns:
            Created task in pending status

        Raises:
            TemplateNotFoundError: If the template does not exist
            TaskServiceError: If the thresholds are inconsistent
        """
        if db.get(ProductTemplate, template_id) is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")

        review = settings.MATCHING_REVIEW_THRESHOLD if review_threshold is None else review_threshold
        auto = settings.MATCHING_AUTO_CONFIRM_THRESHOLD if auto_confirm_threshold is None else auto_confirm_threshold
        if not (0 <= review <= 100 and 0 <= auto <= 100):
            raise TaskServiceError("Thresholds must be within 0-100")
        if review > auto:
            raise TaskServiceError(
                f"Review threshold {review} must not exceed auto-confirm threshold {auto}"
            )

        task = MatchingTask(
            id=uuid4(),
            template_id=template_id,
            description=description,
            status=TaskStatus.PENDING.value,
            review_threshold=review,
            auto_confirm_threshold=auto,
            input_items=list(items),
            source_filename=source_filename,
            source_path=artifact_path,
            total_items=len(items),
            created_by=actor_id,
        )
        db.add(task)
        db.commit()
        db.refresh(task)

        logger.info(
            f"Matching task submitted with {len(items)} items",
            extra={"task_id": task.id, "template_id": template_id, "actor_id": actor_id},
        )
        return task

    @staticmethod
    def get_task(db: Session, task_id: UUID) -> MatchingTask:
        task = db.get(MatchingTask, task_id)
        if task is None:
            raise TaskNotFoundError(f"Matching task {task_id} not found")
        return task

    @staticmethod
    def list_tasks(
        db: Session,
        status: Optional[str] = None,
        template_id: Optional[UUID] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[MatchingTask], int]:
        query = db.query(MatchingTask)
        if status:
            query = query.filter(MatchingTask.status == status)
        if template_id is not None:
            query = query.filter(MatchingTask.template_id == template_id)

        total = query.count()
        tasks = (
            query.order_by(MatchingTask.created_at.desc(), MatchingTask.id)
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return tasks, total

    @staticmethod
    def start_task(db: Session, task_id: UUID) -> MatchingTask:
        """Move a pending task to processing before handing it to a worker."""
        task = MatchingTaskService.get_task(db, task_id)
        task.start()
        db.commit()
        db.refresh(task)
        return task

    @staticmethod
    def retry_task(db: Session, task_id: UUID) -> MatchingTask:
        """Send a failed task back to pending.

        Records from the failed attempt are discarded; the line items stored
        on the task are matched again from scratch.

        Raises:
            StateTransitionError: If the task is not failed
        """
        task = MatchingTaskService.get_task(db, task_id)
        if task.task_status != TaskStatus.FAILED:
            raise StateTransitionError(f"Only failed tasks can be retried, task is {task.status}")

        task.records = []
        task.retry()
        db.commit()
        db.refresh(task)

        logger.info(
            f"Matching task queued for retry #{task.retry_count}",
            extra={"task_id": task.id},
        )
        return task

    @staticmethod
    def delete_task(db: Session, task_id: UUID) -> None:
        task = MatchingTaskService.get_task(db, task_id)
        if task.task_status == TaskStatus.PROCESSING:
            raise TaskServiceError("A task cannot be deleted while it is processing")
        db.delete(task)
        db.commit()
        logger.info("Matching task deleted", extra={"task_id": task_id})

    @staticmethod
    def list_records(
        db: Session,
        task_id: UUID,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[List[MatchingRecord], int]:
        MatchingTaskService.get_task(db, task_id)
        query = db.query(MatchingRecord).filter(MatchingRecord.task_id == task_id)
        if status:
            query = query.filter(MatchingRecord.status == status)

        total = query.count()
        records = (
            query.order_by(MatchingRecord.row_index)
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return records, total

    @staticmethod
    def get_record(db: Session, record_id: UUID) -> MatchingRecord:
        record = db.get(MatchingRecord, record_id)
        if record is None:
            raise RecordNotFoundError(f"Matching record {record_id} not found")
        return record

    @staticmethod
    def record_statistics(db: Session, task_id: Optional[UUID] = None) -> Dict[str, Any]:
        """Record counts by status, priority and exception type.

        Args:
            db: Database session
            task_id: Restrict to one task (all records otherwise)

        Returns:
            Dictionary of counters and the average best score
        """
        query = db.query(MatchingRecord)
        if task_id is not None:
            query = query.filter(MatchingRecord.task_id == task_id)

        by_status = {status.value: 0 for status in RecordStatus}
        for status, count in (
            query.with_entities(MatchingRecord.status, func.count(MatchingRecord.id))
            .group_by(MatchingRecord.status)
            .all()
        ):
            by_status[status] = count

        by_priority = dict(
            query.filter(MatchingRecord.status.in_([
                RecordStatus.PENDING.value, RecordStatus.EXCEPTION.value,
            ]))
            .with_entities(MatchingRecord.priority, func.count(MatchingRecord.id))
            .group_by(MatchingRecord.priority)
            .all()
        )

        by_exception: Dict[str, int] = {}
        for (exceptions,) in query.with_entities(MatchingRecord.exceptions).all():
            for exception in exceptions or []:
                key = exception.get("type", "unknown")
                by_exception[key] = by_exception.get(key, 0) + 1

        average = (
            query.filter(MatchingRecord.best_score.isnot(None))
            .with_entities(func.avg(MatchingRecord.best_score))
            .scalar()
        )
        total = sum(by_status.values())
        return {
            "total": total,
            "by_status": by_status,
            "by_priority": by_priority,
            "by_exception_type": by_exception,
            "average_best_score": round(float(average), 2) if average is not None else None,
            "needs_review": by_status[RecordStatus.PENDING.value] + by_status[RecordStatus.EXCEPTION.value],
        }

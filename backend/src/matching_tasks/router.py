"""Matching task and review API endpoints"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from catalog.service import TemplateNotFoundError
from database import get_db
from dependencies import get_actor_id, get_review_service
from workers.matching_worker import enqueue_matching_task
from .review import ReviewError, ReviewService
from .runner import TaskNotFoundError
from .schemas import (
    BatchReviewRequest,
    BatchReviewResponse,
    ExecuteResponse,
    RecordListResponse,
    ReviewRequest,
    TaskCreate,
    TaskListResponse,
)
from .service import MatchingTaskService, RecordNotFoundError, TaskServiceError
from .status import StateTransitionError, TaskStatus
from models.matching_record import ReviewAction

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/matching-tasks", tags=["matching-tasks"])
records_router = APIRouter(prefix="/api/v1/matching-records", tags=["matching-records"])


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _conflict(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


def _start(db: Session, task_id: UUID):
    task = MatchingTaskService.start_task(db, task_id)
    enqueue_matching_task(task.id)
    return task


# ============================================================================
# Task endpoints
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
def create_task(
    request: TaskCreate,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    """
    Submit wholesale line items for matching.

    Args:
        request: Template, line items and thresholds
        db: Database session
        actor_id: Submitting actor

    Returns:
        Created task (pending, or processing with auto_start)

    Raises:
        HTTPException 404: If the template does not exist
        HTTPException 400: If the thresholds are inconsistent
    """
    try:
        task = MatchingTaskService.create_task(
            db,
            template_id=request.template_id,
            items=request.items,
            actor_id=actor_id,
            description=request.description,
            review_threshold=request.threshold,
            auto_confirm_threshold=request.auto_confirm_threshold,
            source_filename=request.source_filename,
        )
    except TemplateNotFoundError as e:
        raise _not_found(e)
    except TaskServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if request.auto_start:
        task = _start(db, task.id)
    return task.to_dict()


@router.get("", response_model=TaskListResponse)
def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    template_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """List matching tasks, newest first."""
    tasks, total = MatchingTaskService.list_tasks(
        db,
        status=status_filter.value if status_filter else None,
        template_id=template_id,
        page=page,
        per_page=per_page,
    )
    return TaskListResponse(items=[t.to_dict() for t in tasks], total=total, page=page, per_page=per_page)


@router.get("/statistics")
def all_record_statistics(db: Session = Depends(get_db)):
    """Record statistics across all tasks."""
    return MatchingTaskService.record_statistics(db)


@router.get("/{task_id}")
def get_task(task_id: UUID, db: Session = Depends(get_db)):
    try:
        return MatchingTaskService.get_task(db, task_id).to_dict()
    except TaskNotFoundError as e:
        raise _not_found(e)


@router.post("/{task_id}/execute", response_model=ExecuteResponse, status_code=status.HTTP_202_ACCEPTED)
def execute_task(task_id: UUID, db: Session = Depends(get_db)):
    """
    Start the automated matching pass of a pending task.

    Raises:
        HTTPException 404: If the task does not exist
        HTTPException 409: If the task is not pending
    """
    try:
        task = _start(db, task_id)
    except TaskNotFoundError as e:
        raise _not_found(e)
    except StateTransitionError as e:
        raise _conflict(e)
    return ExecuteResponse(task_id=task.id, status=task.status, message="Matching started")


@router.post("/{task_id}/retry", response_model=ExecuteResponse, status_code=status.HTTP_202_ACCEPTED)
def retry_task(task_id: UUID, db: Session = Depends(get_db)):
    """Reset a failed task and run it again from its stored line items."""
    try:
        MatchingTaskService.retry_task(db, task_id)
        task = _start(db, task_id)
    except TaskNotFoundError as e:
        raise _not_found(e)
    except StateTransitionError as e:
        raise _conflict(e)
    return ExecuteResponse(task_id=task.id, status=task.status, message="Matching restarted")


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: UUID, db: Session = Depends(get_db)):
    try:
        MatchingTaskService.delete_task(db, task_id)
    except TaskNotFoundError as e:
        raise _not_found(e)
    except TaskServiceError as e:
        raise _conflict(e)


@router.get("/{task_id}/records", response_model=RecordListResponse)
def list_task_records(
    task_id: UUID,
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    try:
        records, total = MatchingTaskService.list_records(
            db, task_id, status=status_filter, page=page, per_page=per_page
        )
    except TaskNotFoundError as e:
        raise _not_found(e)
    return RecordListResponse(items=[r.to_dict() for r in records], total=total, page=page, per_page=per_page)


@router.get("/{task_id}/statistics")
def task_record_statistics(task_id: UUID, db: Session = Depends(get_db)):
    try:
        MatchingTaskService.get_task(db, task_id)
    except TaskNotFoundError as e:
        raise _not_found(e)
    return MatchingTaskService.record_statistics(db, task_id)


# ============================================================================
# Review endpoints
# ============================================================================

@records_router.get("/pending", response_model=RecordListResponse)
def pending_reviews(
    task_id: Optional[UUID] = Query(None),
    sort: str = Query("priority", pattern="^(priority|score|name)$"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    review_service: ReviewService = Depends(get_review_service),
):
    """Records waiting for a reviewer."""
    records, total = review_service.pending_reviews(task_id, sort=sort, page=page, per_page=per_page)
    return RecordListResponse(items=[r.to_dict() for r in records], total=total, page=page, per_page=per_page)


@records_router.get("/{record_id}")
def get_record(record_id: UUID, db: Session = Depends(get_db)):
    try:
        return MatchingTaskService.get_record(db, record_id).to_dict()
    except RecordNotFoundError as e:
        raise _not_found(e)


@records_router.post("/{record_id}/review")
def review_record(
    record_id: UUID,
    request: ReviewRequest,
    review_service: ReviewService = Depends(get_review_service),
    actor_id: str = Depends(get_actor_id),
):
    """
    Confirm, reject or clear a matching record.

    Raises:
        HTTPException 404: If the record does not exist
        HTTPException 409: If the record cannot be reviewed
    """
    try:
        if request.action == ReviewAction.CONFIRM:
            record = review_service.confirm(
                record_id, request.product_id, actor_id, note=request.note, remember=request.remember
            )
        elif request.action == ReviewAction.REJECT:
            record = review_service.reject(record_id, actor_id, request.note)
        else:
            record = review_service.clear(record_id, actor_id, request.note)
    except RecordNotFoundError as e:
        raise _not_found(e)
    except ReviewError as e:
        raise _conflict(e)
    return record.to_dict()


@records_router.post("/batch-review", response_model=BatchReviewResponse)
def batch_review(
    request: BatchReviewRequest,
    review_service: ReviewService = Depends(get_review_service),
    actor_id: str = Depends(get_actor_id),
):
    """Apply one review action to many records; per-record failures are reported."""
    result = review_service.batch_review(
        request.record_ids, request.action, actor_id, note=request.note, remember=request.remember
    )
    return BatchReviewResponse(succeeded=result.succeeded, failed=result.failed)

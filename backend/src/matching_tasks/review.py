"""Human review of matching records.

Reviewers confirm, reject or clear records left pending or in exception by
the automated pass. Every action is appended to the record's review history
and re-settles the owning task (review while anything is left to review,
completed otherwise).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from catalog.service import SqlPriceSink, propagate_wholesale_price
from matching.ports import PriceSinkPort
from memory.service import LearnProvenance, MemoryStore, MemoryStoreError
from models.matching_memory import LearnSource
from models.matching_record import MatchingRecord, MatchType, Priority, ReviewAction
from models.matching_task import MatchingTask
from models.product import Product
from observability.metrics import memory_operations_total, review_actions_total
from .runner import count_record_statuses
from .service import MatchingTaskService
from .status import REVIEWABLE_TASK_STATUSES, RecordStatus, TaskStatus, settled_status

logger = logging.getLogger(__name__)

PENDING_SORTS = ("priority", "score", "name")


class ReviewError(Exception):
    """Review action not allowed for this record."""
    pass


@dataclass
class BatchReviewResult:
    succeeded: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)


class ReviewService:
    """Apply reviewer decisions to matching records.

    Args:
        db: Database session
        price_sink: Wholesale price write-back for confirmations
        memory_store: Learned bindings updated by confirmations and rejections
    """

    def __init__(
        self,
        db: Session,
        price_sink: Optional[PriceSinkPort] = None,
        memory_store: Optional[MemoryStore] = None,
    ):
        self.db = db
        self.price_sink = price_sink or SqlPriceSink(db)
        self.memory_store = memory_store or MemoryStore(db)

    def confirm(
        self,
        record_id: UUID,
        product_id: UUID,
        actor_id: Optional[str],
        note: Optional[str] = None,
        remember: bool = False,
        match_type: MatchType = MatchType.MANUAL,
    ) -> MatchingRecord:
        """Confirm product_id for the record.

        A product the matcher never proposed is inserted as a manual
        candidate. With remember, the binding is learned (replacing a
        previously confirmed product for the same record). A binding that
        cannot be learned is logged and noted in the review history; the
        confirmation itself stands.

        Raises:
            RecordNotFoundError: If the record does not exist
            ReviewError: If the product does not belong to the task's template
        """
        record, task = self._load(record_id)
        product = self.db.get(Product, product_id)
        if product is None or product.template_id != task.template_id:
            raise ReviewError(f"Product {product_id} is not part of template {task.template_id}")

        previous_status = record.status
        previous_product_id = (
            record.selected_product_id
            if previous_status == RecordStatus.CONFIRMED.value else None
        )

        candidate = record.candidate_for(product_id)
        if candidate is None:
            record.add_manual_candidate(product.id, product.name)
            confidence = 100.0
            is_memory_match = False
        else:
            confidence = float(candidate["score"]["total"])
            is_memory_match = bool(candidate.get("is_memory_match"))

        record.confirm(product.id, confidence, actor_id, match_type, is_memory_match, note)
        record.add_review_history(
            ReviewAction.CONFIRM,
            actor_id,
            previous_status=previous_status,
            note=note,
            details={"product_id": str(product.id), "remember": remember},
        )
        propagate_wholesale_price(
            self.price_sink,
            product.id,
            record.original_name,
            record.original_price,
            record.unit,
            record.id,
        )
        self._settle_task(task)
        self.db.commit()

        if remember:
            self._remember(record, task, product.id, previous_product_id, actor_id)

        review_actions_total.labels(action="confirm").inc()
        logger.info(
            "Matching record confirmed",
            extra={"record_id": record.id, "product_id": product.id, "actor_id": actor_id},
        )
        self.db.refresh(record)
        return record

    def reject(self, record_id: UUID, actor_id: Optional[str], note: Optional[str] = None) -> MatchingRecord:
        """Reject the record's current selection.

        Rejecting a selection that came from memory weakens that binding.
        """
        record, task = self._load(record_id)
        previous_status = record.status

        if record.selected_is_memory_match and record.selected_product_id is not None:
            self.memory_store.reject(
                record.original_name,
                record.selected_product_id,
                actor_id,
                template_id=task.template_id,
                reason=note,
                task_id=task.id,
                record_id=record.id,
            )

        record.reject(note)
        record.add_review_history(ReviewAction.REJECT, actor_id, previous_status=previous_status, note=note)
        self._settle_task(task)
        self.db.commit()
        self.db.refresh(record)

        review_actions_total.labels(action="reject").inc()
        logger.info("Matching record rejected", extra={"record_id": record.id, "actor_id": actor_id})
        return record

    def clear(self, record_id: UUID, actor_id: Optional[str], note: Optional[str] = None) -> MatchingRecord:
        """Drop the selection and put the record back into the review queue."""
        record, task = self._load(record_id)
        previous_status = record.status

        record.clear()
        record.add_review_history(ReviewAction.CLEAR, actor_id, previous_status=previous_status, note=note)
        self._settle_task(task)
        self.db.commit()
        self.db.refresh(record)

        review_actions_total.labels(action="clear").inc()
        return record

    def batch_review(
        self,
        record_ids: List[UUID],
        action: ReviewAction,
        actor_id: Optional[str],
        note: Optional[str] = None,
        remember: bool = False,
    ) -> BatchReviewResult:
        """Apply one action to many records; failures do not stop the batch.

        Batch confirmation confirms each record's current selection, falling
        back to its best candidate.
        """
        result = BatchReviewResult()
        for record_id in record_ids:
            try:
                if action == ReviewAction.CONFIRM:
                    record = MatchingTaskService.get_record(self.db, record_id)
                    product_id = record.selected_product_id
                    if product_id is None and record.best_candidate:
                        product_id = UUID(record.best_candidate["product_id"])
                    if product_id is None:
                        raise ReviewError("Record has no product to confirm")
                    self.confirm(record_id, product_id, actor_id, note=note, remember=remember)
                elif action == ReviewAction.REJECT:
                    self.reject(record_id, actor_id, note)
                elif action == ReviewAction.CLEAR:
                    self.clear(record_id, actor_id, note)
                else:
                    raise ReviewError(f"Unsupported batch action '{action.value}'")
                result.succeeded.append(str(record_id))
            except Exception as e:
                self.db.rollback()
                logger.warning(
                    f"Batch review of record failed: {e}",
                    extra={"record_id": record_id, "actor_id": actor_id},
                )
                result.failed.append({"record_id": str(record_id), "error": str(e)})
        return result

    def pending_reviews(
        self,
        task_id: Optional[UUID] = None,
        sort: str = "priority",
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[List[MatchingRecord], int]:
        """Records waiting for a reviewer (pending or exception)."""
        if sort not in PENDING_SORTS:
            raise ReviewError(f"Unknown sort '{sort}'. Known: {list(PENDING_SORTS)}")

        query = self.db.query(MatchingRecord).filter(
            MatchingRecord.status.in_([RecordStatus.PENDING.value, RecordStatus.EXCEPTION.value])
        )
        if task_id is not None:
            query = query.filter(MatchingRecord.task_id == task_id)

        if sort == "priority":
            rank = case(
                (MatchingRecord.priority == Priority.HIGH.value, 0),
                (MatchingRecord.priority == Priority.MEDIUM.value, 1),
                else_=2,
            )
            order = (rank, MatchingRecord.created_at, MatchingRecord.row_index)
        elif sort == "score":
            order = (MatchingRecord.best_score.desc(), MatchingRecord.row_index)
        else:
            order = (MatchingRecord.original_name, MatchingRecord.row_index)

        total = query.count()
        records = query.order_by(*order).offset((page - 1) * per_page).limit(per_page).all()
        return records, total

    def _load(self, record_id: UUID) -> Tuple[MatchingRecord, MatchingTask]:
        record = MatchingTaskService.get_record(self.db, record_id)
        task = record.task
        if task.task_status not in REVIEWABLE_TASK_STATUSES:
            raise ReviewError(f"Records of a {task.status} task cannot be reviewed")
        return record, task

    def _remember(
        self,
        record: MatchingRecord,
        task: MatchingTask,
        product_id: UUID,
        previous_product_id: Optional[UUID],
        actor_id: Optional[str],
    ) -> None:
        """Learn a confirmed binding; failures are logged and noted on the record."""
        try:
            if previous_product_id is not None:
                self.memory_store.handle_match_change(
                    record.original_name,
                    previous_product_id,
                    product_id,
                    task.template_id,
                    actor_id,
                    task_id=task.id,
                    record_id=record.id,
                )
            else:
                self.memory_store.learn(
                    record.original_name,
                    product_id,
                    task.template_id,
                    actor_id,
                    confidence=100,
                    provenance=LearnProvenance(LearnSource.MANUAL, task.id, record.id),
                )
        except (MemoryStoreError, SQLAlchemyError) as e:
            self.db.rollback()
            memory_operations_total.labels(operation="learn_failed").inc()
            logger.error(
                f"Remembering confirmed binding failed: {e}",
                extra={"record_id": record.id, "product_id": product_id, "actor_id": actor_id},
                exc_info=True,
            )
            record.add_review_history(
                ReviewAction.COMMENT,
                actor_id,
                previous_status=record.status,
                note="binding not remembered",
                details={"product_id": str(product_id), "error": str(e)},
            )
            self.db.commit()

    def _settle_task(self, task: MatchingTask) -> None:
        """Recompute counters and settle a finished task into review/completed."""
        self.db.flush()
        counts = count_record_statuses(self.db, task.id)
        task.apply_progress(counts)
        if task.total_items:
            task.match_rate = round(counts[RecordStatus.CONFIRMED.value] / task.total_items * 100, 2)

        # The automated pass settles a processing task itself
        if task.task_status in (TaskStatus.REVIEW, TaskStatus.COMPLETED):
            target = settled_status(task.pending_items, task.exception_items)
            if target != task.task_status:
                task.transition_to(target)
                logger.info(f"Matching task moved to {target.value}", extra={"task_id": task.id})

"""Automated matching pass over one task.

Processing is one sequential pass over the task's line items. Each item is
matched, checked for binding conflicts and classified:

- confirmed: high-trust memory match, or no conflict and (any memory match,
  score >= auto-confirm threshold, or score within 5 of it with a high tier)
- pending: score >= review threshold; the best candidate is attached as a
  suggestion
- exception: low confidence, no candidates, malformed line item, or an
  unexpected per-item error

Per-item problems never abort the pass. Catalog problems (missing template,
empty catalog) fail the whole task.
"""

import logging
import os
import time
from typing import Any, Dict, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from catalog.service import (
    CatalogError,
    EmptyCatalogError,
    SqlCatalogSource,
    SqlPriceSink,
    propagate_wholesale_price,
)
from config import settings
from matching.conflicts import BindingConflictDetector
from matching.normalizer import normalize
from matching.orchestrator import MatchingOrchestrator, catalog_brand_set
from matching.ports import (
    CatalogEntry,
    CatalogSourcePort,
    ConfidenceTier,
    InvalidLineItemError,
    MatchCandidate,
    PriceSinkPort,
    WholesaleLineItem,
)
from memory.service import MemoryStore, SYSTEM_ACTOR
from models.matching_record import (
    ExceptionType,
    MatchingRecord,
    MatchType,
    ReviewAction,
    Severity,
)
from models.matching_task import MatchingTask
from observability.metrics import (
    line_items_classified_total,
    task_duration_seconds,
    tasks_finished_total,
    tasks_in_progress,
)
from .status import RecordStatus, StateTransitionError, TaskStatus

logger = logging.getLogger(__name__)

AUTO_CONFIRM_TOLERANCE = 5
HIGH_TRUST_MEMORY_CONFIRMATIONS = 3


class TaskNotFoundError(Exception):
    """Matching task does not exist."""
    pass


def count_record_statuses(db: Session, task_id: UUID, unrecorded_failures: int = 0) -> Dict[str, int]:
    """Progress counters recomputed from the stored record statuses."""
    rows = (
        db.query(MatchingRecord.status, func.count(MatchingRecord.id))
        .filter(MatchingRecord.task_id == task_id)
        .group_by(MatchingRecord.status)
        .all()
    )
    counts = {status.value: 0 for status in RecordStatus}
    for status, count in rows:
        counts[status] = count
    counts[RecordStatus.EXCEPTION.value] += unrecorded_failures
    counts["processed"] = sum(counts[status.value] for status in RecordStatus)
    return counts


class TaskRunner:
    """Run the automated matching pass of a task.

    Args:
        db: Database session owned by the caller
        catalog_source: Catalog snapshots (defaults to the product table)
        price_sink: Wholesale price write-back (defaults to the product table)
        orchestrator: Candidate generation
        conflict_detector: Binding conflict checks
        progress_batch_size: Persist progress every N items
    """

    def __init__(
        self,
        db: Session,
        catalog_source: Optional[CatalogSourcePort] = None,
        price_sink: Optional[PriceSinkPort] = None,
        orchestrator: Optional[MatchingOrchestrator] = None,
        conflict_detector: Optional[BindingConflictDetector] = None,
        memory_store: Optional[MemoryStore] = None,
        progress_batch_size: Optional[int] = None,
    ):
        self.db = db
        self.catalog_source = catalog_source or SqlCatalogSource(db)
        self.price_sink = price_sink or SqlPriceSink(db)
        self.memory_store = memory_store or MemoryStore(db)
        self.orchestrator = orchestrator or MatchingOrchestrator(self.memory_store)
        self.conflict_detector = conflict_detector or BindingConflictDetector(db)
        self.progress_batch_size = progress_batch_size or settings.PROGRESS_BATCH_SIZE

    def run(self, task_id: UUID) -> MatchingTask:
        """Process a pending (or already started) task to review/completed/failed.

        Raises:
            TaskNotFoundError: If the task does not exist
            StateTransitionError: If the task is neither pending nor processing
        """
        task = self.db.get(MatchingTask, task_id)
        if task is None:
            raise TaskNotFoundError(f"Matching task {task_id} not found")

        if task.task_status == TaskStatus.PENDING:
            task.start()
            self.db.commit()
        elif task.task_status != TaskStatus.PROCESSING:
            raise StateTransitionError(
                f"Task {task_id} is {task.status}; only pending or processing tasks can run"
            )

        logger.info(
            f"Matching task started with {task.total_items} items",
            extra={"task_id": task.id, "template_id": task.template_id},
        )
        started = time.perf_counter()
        tasks_in_progress.inc()
        try:
            catalog = self.catalog_source.load_active_catalog(task.template_id)
            if not catalog:
                raise EmptyCatalogError(f"Catalog of template {task.template_id} has no active products")

            unrecorded = self._process_items(task, catalog)
            self._finish(task, unrecorded, started)
        except CatalogError as e:
            self._fail(task, str(e))
        except Exception as e:
            logger.error(f"Matching task crashed: {e}", extra={"task_id": task_id}, exc_info=True)
            self._fail(task, f"Unexpected error: {e}")
        finally:
            tasks_in_progress.dec()
            task_duration_seconds.observe(time.perf_counter() - started)
            self._discard_artifact(task)

        return task

    # ------------------------------------------------------------------
    # Item processing
    # ------------------------------------------------------------------

    def _process_items(self, task: MatchingTask, catalog: Sequence[CatalogEntry]) -> int:
        brand_set = catalog_brand_set(catalog)
        items = list(task.input_items or [])
        # Rows already classified by an interrupted earlier run are kept
        done_rows = {
            row for (row,) in self.db.query(MatchingRecord.row_index)
            .filter(MatchingRecord.task_id == task.id)
            .all()
        }

        unrecorded = 0
        for index, raw in enumerate(items):
            if index in done_rows:
                continue
            try:
                with self.db.begin_nested():
                    self._process_item(task, index, raw, catalog, brand_set)
            except Exception as e:
                logger.error(
                    f"Line item {index} failed: {e}",
                    extra={"task_id": task.id},
                    exc_info=True,
                )
                line_items_classified_total.labels(outcome="error").inc()
                if not self._record_item_error(task, index, raw, e):
                    unrecorded += 1

            if (index + 1) % self.progress_batch_size == 0:
                task.apply_progress(count_record_statuses(self.db, task.id, unrecorded))
                self.db.commit()
        return unrecorded

    def _process_item(
        self,
        task: MatchingTask,
        index: int,
        raw: Any,
        catalog: Sequence[CatalogEntry],
        brand_set: frozenset,
    ) -> MatchingRecord:
        try:
            item = WholesaleLineItem.from_row(raw)
        except InvalidLineItemError as e:
            record = self._new_record(task, index, raw if isinstance(raw, dict) else {"value": raw})
            record.mark_exception(
                ExceptionType.PARSING_ERROR,
                str(e),
                Severity.HIGH,
                suggestion="Fix the line item and resubmit",
            )
            self.db.add(record)
            line_items_classified_total.labels(outcome="parsing_error").inc()
            return record

        record = self._new_record(task, index, item.raw, item)
        candidates = self.orchestrator.match(item, catalog, task.template_id, brand_set)
        record.candidates = [candidate.to_dict() for candidate in candidates]
        record.best_score = float(candidates[0].total) if candidates else None
        self.db.add(record)
        self._classify(task, record, item, candidates)
        return record

    def _classify(
        self,
        task: MatchingTask,
        record: MatchingRecord,
        item: WholesaleLineItem,
        candidates: Sequence[MatchCandidate],
    ) -> None:
        if not candidates or candidates[0].total <= 0:
            record.mark_exception(
                ExceptionType.NO_CANDIDATES,
                "No catalog product is similar enough to this name",
                Severity.HIGH,
                suggestion="Add the product to the catalog or match it manually",
            )
            line_items_classified_total.labels(outcome="no_candidates").inc()
            return

        best = candidates[0]
        score = best.total
        conflict = self.conflict_detector.has_binding_conflict(best.product_id, task.id, item.name)
        high_trust_memory = bool(
            best.is_memory_match
            and best.memory_source is not None
            and (
                best.memory_source.is_high_trust
                or best.memory_source.confirm_count >= HIGH_TRUST_MEMORY_CONFIRMATIONS
            )
        )

        if high_trust_memory or (not conflict and (
            best.is_memory_match
            or score >= task.auto_confirm_threshold
            or (
                score >= task.auto_confirm_threshold - AUTO_CONFIRM_TOLERANCE
                and self._task_tier(task, score) == ConfidenceTier.HIGH
            )
        )):
            self._auto_confirm(task, record, item, best, conflict)
            return

        if score >= task.review_threshold:
            record.suggest(best.product_id, float(score), best.is_memory_match)
            if conflict:
                record.add_exception(
                    ExceptionType.DUPLICATE_NAME,
                    "The product is already bound to a different wholesale name",
                    Severity.LOW,
                    suggestion="Check whether both names really mean the same product",
                )
            line_items_classified_total.labels(outcome="pending").inc()
            return

        record.mark_exception(
            ExceptionType.LOW_CONFIDENCE,
            f"Best score {score} is below the review threshold {task.review_threshold}",
            Severity.MEDIUM,
            suggestion="Pick the product manually",
        )
        line_items_classified_total.labels(outcome="low_confidence").inc()

    def _auto_confirm(
        self,
        task: MatchingTask,
        record: MatchingRecord,
        item: WholesaleLineItem,
        best: MatchCandidate,
        conflict: bool,
    ) -> None:
        match_type = MatchType.MEMORY if best.is_memory_match else MatchType.AUTO
        record.confirm(
            best.product_id,
            float(best.total),
            SYSTEM_ACTOR,
            match_type,
            is_memory_match=best.is_memory_match,
        )
        record.add_review_history(
            ReviewAction.CONFIRM,
            SYSTEM_ACTOR,
            previous_status=RecordStatus.PENDING.value,
            note="auto-confirmed",
            details={"score": best.total, "conflict_overridden": conflict},
        )
        if best.is_memory_match and best.memory_source is not None:
            self.memory_store.touch(best.memory_source.memory_id, task.id, record.id)
        propagate_wholesale_price(
            self.price_sink,
            best.product_id,
            item.name,
            item.price,
            item.unit,
            record.id,
        )
        line_items_classified_total.labels(outcome="confirmed").inc()

    def _task_tier(self, task: MatchingTask, score: float) -> ConfidenceTier:
        profile = self.orchestrator.profile
        task_profile = profile.with_tiers(
            max(profile.high_tier, task.auto_confirm_threshold),
            task.review_threshold,
        )
        return task_profile.tier_for(score)

    def _new_record(
        self,
        task: MatchingTask,
        index: int,
        raw: Dict[str, Any],
        item: Optional[WholesaleLineItem] = None,
    ) -> MatchingRecord:
        name = item.name if item else str(raw.get("name") or "")
        return MatchingRecord(
            id=uuid4(),
            task_id=task.id,
            row_index=index,
            original_name=name,
            normalized_name=normalize(name),
            original_price=item.price if item else None,
            quantity=item.quantity if item else 1,
            unit=item.unit if item else None,
            supplier=item.supplier if item else None,
            raw_data=_json_safe(raw),
            candidates=[],
            status=RecordStatus.PENDING.value,
            priority="medium",
            exceptions=[],
            review_history=[],
        )

    def _record_item_error(self, task: MatchingTask, index: int, raw: Any, error: Exception) -> bool:
        try:
            with self.db.begin_nested():
                record = self._new_record(task, index, raw if isinstance(raw, dict) else {"value": raw})
                record.mark_exception(
                    ExceptionType.PROCESSING_ERROR,
                    f"Processing failed: {error}",
                    Severity.HIGH,
                )
                self.db.add(record)
            return True
        except SQLAlchemyError:
            logger.error(
                f"Could not store the failure of line item {index}",
                extra={"task_id": task.id},
                exc_info=True,
            )
            return False

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finish(self, task: MatchingTask, unrecorded: int, started: float) -> None:
        counts = count_record_statuses(self.db, task.id, unrecorded)
        task.apply_progress(counts)

        processed = counts["processed"]
        settled = counts[RecordStatus.CONFIRMED.value] + counts[RecordStatus.PENDING.value]
        task.match_rate = round(settled / processed * 100, 2) if processed else 0.0
        average = (
            self.db.query(func.avg(MatchingRecord.best_score))
            .filter(MatchingRecord.task_id == task.id, MatchingRecord.best_score.isnot(None))
            .scalar()
        )
        task.average_confidence = round(float(average), 2) if average is not None else 0.0
        task.matching_ms = int((time.perf_counter() - started) * 1000)
        task.complete()
        task.total_ms = task.total_duration_ms
        self.db.commit()

        tasks_finished_total.labels(status=task.status).inc()
        logger.info(
            f"Matching task finished as {task.status}",
            extra={"task_id": task.id, "duration_ms": task.matching_ms},
        )

    def _fail(self, task: MatchingTask, message: str) -> None:
        self.db.rollback()
        task.apply_progress(count_record_statuses(self.db, task.id))
        task.fail(message)
        task.total_ms = task.total_duration_ms
        self.db.commit()
        tasks_finished_total.labels(status=TaskStatus.FAILED.value).inc()
        logger.warning(f"Matching task failed: {message}", extra={"task_id": task.id})

    def _discard_artifact(self, task: MatchingTask) -> None:
        path = task.source_path
        if not path:
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove task input {path}: {e}", extra={"task_id": task.id})
        try:
            task.source_path = None
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Could not clear task input path", extra={"task_id": task.id}, exc_info=True)


def _json_safe(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Row payload with non-JSON values stringified."""
    safe = {}
    for key, value in raw.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            safe[str(key)] = value
        else:
            safe[str(key)] = str(value)
    return safe

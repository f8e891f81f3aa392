"""Product binding conflict detection.

A binding conflict means a product is about to be bound to a wholesale name
that looks unrelated to the names it was already confirmed for.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from matching_tasks.status import RecordStatus
from models.matching_record import MatchingRecord
from .normalizer import normalize
from .scorer import combined_similarity

logger = logging.getLogger(__name__)

CONFLICT_SIMILARITY = 0.30
SAFE_SIMILARITY = 0.60


class BindingConflictDetector:
    """Check a proposed binding against confirmed matching records.

    Task scope: another name already confirmed to the product in the same
    task is a conflict unless it normalizes to the same text.
    Global scope: compared with the latest confirmation of the product
    anywhere, unrelated names (no containment, similarity < 30%) conflict.
    Similarities between 30% and 60% are accepted.
    """

    def __init__(self, db: Session):
        self.db = db

    def has_binding_conflict(
        self,
        product_id: UUID,
        task_id: Optional[UUID],
        candidate_original_name: str,
    ) -> bool:
        candidate = normalize(candidate_original_name)
        if not candidate:
            return False

        if task_id is not None:
            same_task = (
                self.db.query(MatchingRecord.normalized_name)
                .filter(
                    MatchingRecord.task_id == task_id,
                    MatchingRecord.selected_product_id == product_id,
                    MatchingRecord.status == RecordStatus.CONFIRMED.value,
                )
                .all()
            )
            for (confirmed_name,) in same_task:
                if confirmed_name != candidate:
                    logger.info(
                        f"Binding conflict in task: '{candidate}' vs '{confirmed_name}'",
                        extra={"task_id": task_id, "product_id": product_id},
                    )
                    return True
            if same_task:
                return False

        latest = (
            self.db.query(MatchingRecord.normalized_name)
            .filter(
                MatchingRecord.selected_product_id == product_id,
                MatchingRecord.status == RecordStatus.CONFIRMED.value,
            )
            .order_by(MatchingRecord.selected_confirmed_at.desc())
            .first()
        )
        if latest is None:
            return False

        previous = latest[0]
        if not previous or previous == candidate:
            return False
        if previous in candidate or candidate in previous:
            return False

        similarity = combined_similarity(previous, candidate)
        if similarity < CONFLICT_SIMILARITY:
            logger.info(
                f"Binding conflict: '{candidate}' vs latest '{previous}' ({similarity:.2f})",
                extra={"product_id": product_id},
            )
            return True
        return False

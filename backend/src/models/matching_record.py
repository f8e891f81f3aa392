"""Matching record model.

One matching record per submitted wholesale line item. Holds the ranked
candidates produced by the orchestrator, the selected (or suggested) product,
open exceptions and the human review history.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Column, Text, ForeignKey, Integer, Float, Boolean, DateTime, Numeric, Index,
    CheckConstraint, Uuid,
)
from sqlalchemy.orm import relationship

from matching_tasks.status import RecordStatus
from .base import Base, PortableJSONB, utcnow, isoformat


class MatchType(str, Enum):
    """How the selected product was chosen."""
    AUTO = "auto"
    MANUAL = "manual"
    MEMORY = "memory"
    EXPERT = "expert"


class ExceptionType(str, Enum):
    NO_CANDIDATES = "no_candidates"
    LOW_CONFIDENCE = "low_confidence"
    PRICE_MISMATCH = "price_mismatch"
    DUPLICATE_NAME = "duplicate_name"
    PARSING_ERROR = "parsing_error"
    PROCESSING_ERROR = "processing_error"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReviewAction(str, Enum):
    REVIEW = "review"
    CONFIRM = "confirm"
    REJECT = "reject"
    CLEAR = "clear"
    COMMENT = "comment"


class MatchingRecord(Base):
    """Classification of one wholesale line item within a matching task.

    selected_* columns hold either a confirmation (status=confirmed) or a
    suggestion for the reviewer (status=pending, selected_is_suggestion=True).
    """
    __tablename__ = "matching_record"
    __table_args__ = (
        Index("ix_matching_record_task_status", "task_id", "status"),
        Index("ix_matching_record_product_status", "selected_product_id", "status"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'rejected', 'exception')",
            name="ck_matching_record_status",
        ),
        CheckConstraint("priority IN ('high', 'medium', 'low')", name="ck_matching_record_priority"),
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    task_id = Column(Uuid, ForeignKey("matching_task.id", ondelete="CASCADE"), nullable=False)
    row_index = Column(Integer, nullable=False)

    # Original line item
    original_name = Column(Text, nullable=False, default="")
    normalized_name = Column(Text, nullable=False, default="")
    original_price = Column(Numeric(precision=12, scale=2), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit = Column(Text, nullable=True)
    supplier = Column(Text, nullable=True)
    raw_data = Column(PortableJSONB, nullable=False, default=dict)

    # Matching output
    candidates = Column(PortableJSONB, nullable=False, default=list)
    best_score = Column(Float, nullable=True)

    # Selected match
    selected_product_id = Column(Uuid, ForeignKey("product.id", ondelete="SET NULL"), nullable=True)
    selected_confidence = Column(Float, nullable=True)
    selected_match_type = Column(Text, nullable=True)
    selected_is_memory_match = Column(Boolean, nullable=False, default=False)
    selected_is_suggestion = Column(Boolean, nullable=False, default=False)
    selected_confirmed_by = Column(Text, nullable=True)
    selected_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    selected_note = Column(Text, nullable=True)

    status = Column(Text, nullable=False, default=RecordStatus.PENDING.value)
    priority = Column(Text, nullable=False, default=Priority.MEDIUM.value)
    exceptions = Column(PortableJSONB, nullable=False, default=list)
    review_history = Column(PortableJSONB, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    task = relationship("MatchingTask", back_populates="records")

    @property
    def record_status(self) -> RecordStatus:
        return RecordStatus(self.status)

    @property
    def best_candidate(self) -> Optional[Dict[str, Any]]:
        return self.candidates[0] if self.candidates else None

    @property
    def needs_review(self) -> bool:
        return self.status in (RecordStatus.PENDING.value, RecordStatus.EXCEPTION.value)

    @property
    def is_high_risk(self) -> bool:
        return any(e.get("severity") == Severity.HIGH.value for e in (self.exceptions or []))

    def candidate_for(self, product_id: UUID) -> Optional[Dict[str, Any]]:
        for candidate in self.candidates or []:
            if candidate.get("product_id") == str(product_id):
                return candidate
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_review_history(
        self,
        action: ReviewAction,
        actor_id: Optional[str],
        previous_status: Optional[str] = None,
        note: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> "MatchingRecord":
        entry = {
            "action": action.value,
            "actor_id": actor_id,
            "at": isoformat(at or utcnow()),
            "note": note,
            "previous_status": previous_status,
            "new_status": self.status,
            "details": details or {},
        }
        self.review_history = [*(self.review_history or []), entry]
        return self

    def add_exception(
        self,
        exception_type: ExceptionType,
        message: str,
        severity: Severity = Severity.MEDIUM,
        suggestion: Optional[str] = None,
    ) -> "MatchingRecord":
        self.exceptions = [
            *(self.exceptions or []),
            {
                "type": exception_type.value,
                "message": message,
                "severity": severity.value,
                "suggestion": suggestion,
                "at": isoformat(utcnow()),
            },
        ]
        if severity == Severity.HIGH:
            self.priority = Priority.HIGH.value
        return self

    def mark_exception(
        self,
        exception_type: ExceptionType,
        message: str,
        severity: Severity,
        suggestion: Optional[str] = None,
    ) -> "MatchingRecord":
        self.status = RecordStatus.EXCEPTION.value
        return self.add_exception(exception_type, message, severity, suggestion)

    def suggest(self, product_id: UUID, confidence: float, is_memory_match: bool = False) -> "MatchingRecord":
        """Attach a reviewer suggestion without confirming it."""
        self.status = RecordStatus.PENDING.value
        self.selected_product_id = product_id
        self.selected_confidence = confidence
        self.selected_match_type = MatchType.MEMORY.value if is_memory_match else MatchType.AUTO.value
        self.selected_is_memory_match = is_memory_match
        self.selected_is_suggestion = True
        self.selected_confirmed_by = None
        self.selected_confirmed_at = None
        return self

    def confirm(
        self,
        product_id: UUID,
        confidence: float,
        actor_id: Optional[str],
        match_type: MatchType,
        is_memory_match: bool = False,
        note: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> "MatchingRecord":
        self.status = RecordStatus.CONFIRMED.value
        self.selected_product_id = product_id
        self.selected_confidence = confidence
        self.selected_match_type = match_type.value
        self.selected_is_memory_match = is_memory_match
        self.selected_is_suggestion = False
        self.selected_confirmed_by = actor_id
        self.selected_confirmed_at = at or utcnow()
        self.selected_note = note
        return self

    def reject(self, note: Optional[str] = None) -> "MatchingRecord":
        self.status = RecordStatus.REJECTED.value
        self.selected_is_suggestion = False
        self.selected_note = note
        return self

    def clear(self) -> "MatchingRecord":
        """Drop the selection and send the record back to the review queue."""
        self.status = RecordStatus.PENDING.value
        self.selected_product_id = None
        self.selected_confidence = None
        self.selected_match_type = None
        self.selected_is_memory_match = False
        self.selected_is_suggestion = False
        self.selected_confirmed_by = None
        self.selected_confirmed_at = None
        self.selected_note = None
        return self

    def add_manual_candidate(self, product_id: UUID, product_name: str) -> "MatchingRecord":
        """Insert a reviewer-chosen product that the matcher never proposed."""
        candidate = {
            "product_id": str(product_id),
            "product_name": product_name,
            "brand": None,
            "score": {
                "name": 100, "brand": 100, "keywords": 100, "package": 100,
                "price": 50, "total": 100, "strategy": "manual_selection",
            },
            "confidence_tier": "high",
            "reasons": [{
                "type": "manual_selection",
                "description": "Selected by reviewer",
                "weight": 1.0,
            }],
            "rank": 0,
            "is_memory_match": False,
            "memory_source": None,
        }
        self.candidates = [candidate, *(self.candidates or [])]
        return self

    def selected_match_dict(self) -> Optional[Dict[str, Any]]:
        if self.selected_product_id is None:
            return None
        return {
            "product_id": str(self.selected_product_id),
            "confidence": self.selected_confidence,
            "match_type": self.selected_match_type,
            "is_memory_match": bool(self.selected_is_memory_match),
            "is_suggestion": bool(self.selected_is_suggestion),
            "confirmed_by": self.selected_confirmed_by,
            "confirmed_at": isoformat(self.selected_confirmed_at),
            "note": self.selected_note,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary representation."""
        return {
            "id": str(self.id),
            "task_id": str(self.task_id),
            "row_index": self.row_index,
            "original_data": {
                "name": self.original_name,
                "price": float(self.original_price) if self.original_price is not None else None,
                "quantity": self.quantity,
                "unit": self.unit,
                "supplier": self.supplier,
            },
            "normalized_name": self.normalized_name,
            "candidates": list(self.candidates or []),
            "best_score": self.best_score,
            "selected_match": self.selected_match_dict(),
            "status": self.status,
            "priority": self.priority,
            "exceptions": list(self.exceptions or []),
            "review_history": list(self.review_history or []),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

"""Matching memory SQLAlchemy model.

Stores learned (normalized wholesale name -> product) bindings per catalog
template. This is the learning loop of the matcher: confirmed decisions are
remembered and offered first on the next task.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    Column, Text, ForeignKey, Integer, Float, Boolean, DateTime, Index,
    CheckConstraint, Uuid,
)
from sqlalchemy.sql import text

from .base import Base, PortableJSONB, utcnow, as_utc, isoformat


class MemoryStatus(str, Enum):
    """Lifecycle of a memory record."""
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    CONFLICTED = "conflicted"


class LearnSource(str, Enum):
    """Where a learned binding came from."""
    AUTO = "auto"
    MANUAL = "manual"
    EXPERT = "expert"
    LEARNED = "learned"


MIN_WEIGHT = 0.1
MAX_WEIGHT = 10.0
MIN_REJECTED_CONFIDENCE = 30.0
REJECTION_WEIGHT_FACTOR = 0.7
REJECTION_CONFIDENCE_FACTOR = 0.8
REJECTIONS_BEFORE_CONFLICTED = 3
PREFERENCE_CONFIRMATIONS = 3
HIGH_TRUST_SCORE = 85
HIGH_TRUST_CONFIRMATIONS = 2


class MatchingMemory(Base):
    """Learned binding between a wholesale name and a catalog product.

    Invariant: at most one ACTIVE record per (normalized_name, template_id).
    The partial unique index below enforces it at the storage level; the
    memory store resolves violations by deprecating the older record.

    Embedded logs (conflicts, audit_trail, related_records) are append-only
    and always replaced with a new list so the ORM sees the change.
    """
    __tablename__ = "matching_memory"
    __table_args__ = (
        Index(
            "uq_matching_memory_active_name",
            "normalized_name",
            "template_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_matching_memory_template_status", "template_id", "status"),
        Index("ix_matching_memory_product", "product_id"),
        CheckConstraint(
            "status IN ('active', 'deprecated', 'conflicted')",
            name="ck_matching_memory_status",
        ),
        CheckConstraint("confidence >= 0 AND confidence <= 100", name="ck_matching_memory_confidence"),
        CheckConstraint("weight >= 0.1 AND weight <= 10", name="ck_matching_memory_weight"),
        CheckConstraint("confirm_count >= 1", name="ck_matching_memory_confirm_count"),
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    template_id = Column(Uuid, ForeignKey("product_template.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Uuid, ForeignKey("product.id", ondelete="CASCADE"), nullable=False)

    normalized_name = Column(Text, nullable=False)
    original_name = Column(Text, nullable=False)

    confidence = Column(Float, nullable=False, default=100.0)
    source = Column(Text, nullable=False, default=LearnSource.MANUAL.value)
    confirm_count = Column(Integer, nullable=False, default=1)
    weight = Column(Float, nullable=False, default=1.0)
    is_user_preference = Column(Boolean, nullable=False, default=False)
    status = Column(Text, nullable=False, default=MemoryStatus.ACTIVE.value)

    last_confirmed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    confirmed_by = Column(Text, nullable=True, comment="Opaque actor id")
    source_task_id = Column(Uuid, nullable=True, comment="Task that first taught this binding")

    usage_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    conflicts = Column(PortableJSONB, nullable=False, default=list)
    audit_trail = Column(PortableJSONB, nullable=False, default=list)
    related_records = Column(PortableJSONB, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def time_decay(self, now: Optional[datetime] = None) -> int:
        """Penalty for bindings nobody has confirmed in over a month."""
        now = now or utcnow()
        last = as_utc(self.last_confirmed_at) or now
        days = (now - last).days
        if days <= 30:
            return 0
        return min(20, math.floor((days - 30) / 10))

    def trust_score_at(self, now: Optional[datetime] = None) -> float:
        score = (
            float(self.confidence)
            + min(self.confirm_count * 5, 25)
            - self.time_decay(now)
            + (float(self.weight) - 1.0) * 10
        )
        return max(0.0, min(100.0, score))

    @property
    def trust_score(self) -> float:
        return self.trust_score_at()

    @property
    def is_high_trust(self) -> bool:
        return (
            self.trust_score >= HIGH_TRUST_SCORE
            and self.confirm_count >= HIGH_TRUST_CONFIRMATIONS
        )

    @property
    def rejection_count(self) -> int:
        return sum(1 for c in (self.conflicts or []) if c.get("type") == "user_rejection")

    @property
    def related_task_ids(self) -> List[str]:
        return [r["task_id"] for r in (self.related_records or []) if r.get("task_id")]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append_audit(
        self,
        action: str,
        actor_id: Optional[str],
        at: Optional[datetime] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "MatchingMemory":
        entry = {
            "action": action,
            "actor_id": actor_id,
            "at": isoformat(at or utcnow()),
            "details": details or {},
        }
        self.audit_trail = [*(self.audit_trail or []), entry]
        return self

    def record_usage(
        self,
        task_id: Optional[str] = None,
        record_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> "MatchingMemory":
        """Count a use of this binding without treating it as a new confirmation."""
        at = at or utcnow()
        self.usage_count = (self.usage_count or 0) + 1
        self.last_used_at = at
        if task_id or record_id:
            self.related_records = [
                *(self.related_records or []),
                {"task_id": task_id, "record_id": record_id, "at": isoformat(at)},
            ]
        return self

    def add_confirmation(
        self,
        actor_id: Optional[str],
        task_id: Optional[str] = None,
        record_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> "MatchingMemory":
        """Re-confirm the binding.

        From the third confirmation on, every confirmation raises the weight
        by 0.1 (capped) and marks the binding as a user preference.
        """
        at = at or utcnow()
        self.confirm_count = (self.confirm_count or 0) + 1
        self.last_confirmed_at = at
        self.confirmed_by = actor_id
        if self.confirm_count >= PREFERENCE_CONFIRMATIONS:
            self.weight = min(MAX_WEIGHT, round(float(self.weight) + 0.1, 4))
            self.is_user_preference = True
        self.record_usage(task_id=task_id, record_id=record_id, at=at)
        return self.append_audit(
            "confirmed",
            actor_id,
            at,
            {"confirm_count": self.confirm_count, "weight": self.weight},
        )

    def apply_rejection(
        self,
        actor_id: Optional[str],
        reason: str = "user rejected the suggested product",
        task_id: Optional[str] = None,
        record_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> "MatchingMemory":
        at = at or utcnow()
        self.weight = max(MIN_WEIGHT, round(float(self.weight) * REJECTION_WEIGHT_FACTOR, 4))
        self.confidence = max(
            MIN_REJECTED_CONFIDENCE,
            round(float(self.confidence) * REJECTION_CONFIDENCE_FACTOR, 2),
        )
        self.conflicts = [
            *(self.conflicts or []),
            {
                "type": "user_rejection",
                "product_id": str(self.product_id),
                "reason": reason,
                "actor_id": actor_id,
                "task_id": task_id,
                "record_id": record_id,
                "at": isoformat(at),
            },
        ]
        if self.rejection_count >= REJECTIONS_BEFORE_CONFLICTED:
            self.status = MemoryStatus.CONFLICTED.value
        return self.append_audit(
            "rejected",
            actor_id,
            at,
            {"weight": self.weight, "confidence": self.confidence, "status": self.status},
        )

    def deprecate(
        self,
        actor_id: Optional[str],
        reason: str,
        at: Optional[datetime] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "MatchingMemory":
        self.status = MemoryStatus.DEPRECATED.value
        return self.append_audit("deprecated", actor_id, at, {"reason": reason, **(details or {})})

    def to_dict(self):
        """Convert memory record to dictionary representation."""
        return {
            "id": str(self.id),
            "template_id": str(self.template_id),
            "product_id": str(self.product_id),
            "normalized_name": self.normalized_name,
            "original_name": self.original_name,
            "confidence": float(self.confidence),
            "source": self.source,
            "confirm_count": self.confirm_count,
            "weight": float(self.weight),
            "is_user_preference": bool(self.is_user_preference),
            "status": self.status,
            "trust_score": round(self.trust_score, 2),
            "is_high_trust": self.is_high_trust,
            "last_confirmed_at": isoformat(self.last_confirmed_at),
            "confirmed_by": self.confirmed_by,
            "usage_count": self.usage_count,
            "last_used_at": isoformat(self.last_used_at),
            "conflicts": list(self.conflicts or []),
            "audit_trail": list(self.audit_trail or []),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

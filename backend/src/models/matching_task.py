"""Matching task model.

A matching task is one submitted batch of wholesale line items matched
against one catalog template. It owns its matching records.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import Column, Text, ForeignKey, Integer, Float, DateTime, Index, CheckConstraint, Uuid
from sqlalchemy.orm import relationship

from matching_tasks.status import TaskStatus, validate_transition, settled_status
from .base import Base, PortableJSONB, utcnow, as_utc, isoformat


class MatchingTask(Base):
    """Batch matching task.

    Lifecycle:
    1. Submitted with its line items (status=pending)
    2. Picked up by a worker (status=processing)
    3. Finished: review if any pending/exception records remain, else completed
    4. Failed on a data error (status=failed); retry moves it back to pending

    Progress counters are a cache of the record statuses and are recomputed
    from the records, never only incremented.
    """
    __tablename__ = "matching_task"
    __table_args__ = (
        Index("ix_matching_task_status", "status"),
        Index("ix_matching_task_template", "template_id"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'review', 'completed', 'failed', 'cancelled')",
            name="ck_matching_task_status",
        ),
        CheckConstraint("review_threshold >= 0 AND review_threshold <= 100", name="ck_matching_task_threshold"),
        CheckConstraint(
            "auto_confirm_threshold >= 0 AND auto_confirm_threshold <= 100",
            name="ck_matching_task_auto_threshold",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    template_id = Column(Uuid, ForeignKey("product_template.id", ondelete="RESTRICT"), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default=TaskStatus.PENDING.value)

    # Config
    review_threshold = Column(Integer, nullable=False, default=65)
    auto_confirm_threshold = Column(Integer, nullable=False, default=90)

    # Input
    input_items = Column(PortableJSONB, nullable=False, default=list, comment="Submitted line items")
    source_filename = Column(Text, nullable=True)
    source_path = Column(Text, nullable=True, comment="Temporary input artifact, removed after processing")

    # Progress
    total_items = Column(Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=False, default=0)
    confirmed_items = Column(Integer, nullable=False, default=0)
    pending_items = Column(Integer, nullable=False, default=0)
    rejected_items = Column(Integer, nullable=False, default=0)
    exception_items = Column(Integer, nullable=False, default=0)

    # Statistics
    match_rate = Column(Float, nullable=False, default=0.0)
    average_confidence = Column(Float, nullable=False, default=0.0)
    matching_ms = Column(Integer, nullable=True)
    total_ms = Column(Integer, nullable=True)

    # Lifecycle
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    created_by = Column(Text, nullable=True, comment="Opaque actor id")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    records = relationship(
        "MatchingRecord",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="MatchingRecord.row_index",
    )

    @property
    def task_status(self) -> TaskStatus:
        return TaskStatus(self.status)

    @property
    def completion_percentage(self) -> int:
        if not self.total_items:
            return 0
        return round(self.processed_items / self.total_items * 100)

    @property
    def total_duration_ms(self) -> Optional[int]:
        if not self.started_at or not self.completed_at:
            return None
        delta = as_utc(self.completed_at) - as_utc(self.started_at)
        return int(delta.total_seconds() * 1000)

    def transition_to(self, new_status: TaskStatus) -> "MatchingTask":
        """Move to new_status; staying in the current status is a no-op."""
        if self.task_status == new_status:
            return self
        validate_transition(self.task_status, new_status)
        self.status = new_status.value
        return self

    def start(self, at: Optional[datetime] = None) -> "MatchingTask":
        self.transition_to(TaskStatus.PROCESSING)
        self.started_at = at or utcnow()
        self.completed_at = None
        self.error_message = None
        return self

    def apply_progress(self, counts: Dict[str, int]) -> "MatchingTask":
        self.processed_items = counts.get("processed", 0)
        self.confirmed_items = counts.get("confirmed", 0)
        self.pending_items = counts.get("pending", 0)
        self.rejected_items = counts.get("rejected", 0)
        self.exception_items = counts.get("exception", 0)
        return self

    def complete(self, at: Optional[datetime] = None) -> "MatchingTask":
        """Finish the automated pass and settle into review or completed."""
        self.transition_to(settled_status(self.pending_items, self.exception_items))
        self.completed_at = at or utcnow()
        return self

    def fail(self, error: str, at: Optional[datetime] = None) -> "MatchingTask":
        self.transition_to(TaskStatus.FAILED)
        self.error_message = error
        self.completed_at = at or utcnow()
        return self

    def retry(self) -> "MatchingTask":
        self.transition_to(TaskStatus.PENDING)
        self.retry_count = (self.retry_count or 0) + 1
        self.error_message = None
        self.started_at = None
        self.completed_at = None
        return self.apply_progress({})

    def to_dict(self) -> Dict[str, Any]:
        """Convert task to dictionary representation."""
        return {
            "id": str(self.id),
            "template_id": str(self.template_id),
            "description": self.description,
            "status": self.status,
            "config": {
                "threshold": self.review_threshold,
                "auto_confirm_threshold": self.auto_confirm_threshold,
            },
            "source_filename": self.source_filename,
            "progress": {
                "total": self.total_items,
                "processed": self.processed_items,
                "confirmed": self.confirmed_items,
                "pending": self.pending_items,
                "rejected": self.rejected_items,
                "exception": self.exception_items,
                "completion_percentage": self.completion_percentage,
            },
            "statistics": {
                "match_rate": self.match_rate,
                "average_confidence": self.average_confidence,
                "matching_ms": self.matching_ms,
                "total_ms": self.total_ms,
            },
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

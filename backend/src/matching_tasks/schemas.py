"""Pydantic schemas for matching task and review endpoints."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from models.matching_record import ReviewAction


class TaskCreate(BaseModel):
    """Request to submit a matching task."""
    template_id: UUID
    items: List[Dict[str, Any]] = Field(..., min_length=1, description="Wholesale line items")
    description: Optional[str] = None
    threshold: Optional[int] = Field(None, ge=0, le=100, description="Review threshold")
    auto_confirm_threshold: Optional[int] = Field(None, ge=0, le=100)
    source_filename: Optional[str] = None
    auto_start: bool = Field(False, description="Start processing right after submission")

    @model_validator(mode="after")
    def check_thresholds(self) -> "TaskCreate":
        if (
            self.threshold is not None
            and self.auto_confirm_threshold is not None
            and self.threshold > self.auto_confirm_threshold
        ):
            raise ValueError("threshold must not exceed auto_confirm_threshold")
        return self


class TaskListResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    page: int
    per_page: int


class RecordListResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    page: int
    per_page: int


class ExecuteResponse(BaseModel):
    task_id: UUID
    status: str
    message: str


class ReviewRequest(BaseModel):
    """Single review action on a matching record."""
    action: ReviewAction
    product_id: Optional[UUID] = None
    note: Optional[str] = Field(None, max_length=2000)
    remember: bool = Field(False, description="Learn the confirmed binding")

    @model_validator(mode="after")
    def check_product(self) -> "ReviewRequest":
        if self.action == ReviewAction.CONFIRM and self.product_id is None:
            raise ValueError("product_id is required to confirm a record")
        if self.action not in (ReviewAction.CONFIRM, ReviewAction.REJECT, ReviewAction.CLEAR):
            raise ValueError(f"Unsupported action '{self.action.value}'")
        return self


class BatchReviewRequest(BaseModel):
    record_ids: List[UUID] = Field(..., min_length=1, max_length=500)
    action: ReviewAction
    note: Optional[str] = Field(None, max_length=2000)
    remember: bool = False


class BatchReviewResponse(BaseModel):
    succeeded: List[str]
    failed: List[Dict[str, str]]

"""Pydantic schemas for memory endpoints."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from models.matching_memory import LearnSource, MemoryStatus


class LearnRequest(BaseModel):
    """Request to remember a wholesale name -> product binding."""
    original_name: str = Field(..., min_length=1, max_length=500)
    product_id: UUID
    template_id: UUID
    confidence: float = Field(100, ge=0, le=100)
    source: LearnSource = LearnSource.MANUAL
    task_id: Optional[UUID] = None
    record_id: Optional[UUID] = None


class RejectRequest(BaseModel):
    original_name: str = Field(..., min_length=1, max_length=500)
    product_id: UUID
    template_id: Optional[UUID] = None
    reason: Optional[str] = Field(None, max_length=2000)
    task_id: Optional[UUID] = None
    record_id: Optional[UUID] = None


class MatchChangeRequest(BaseModel):
    """A reviewer replaced one product with another for a wholesale name."""
    original_name: str = Field(..., min_length=1, max_length=500)
    old_product_id: Optional[UUID] = None
    new_product_id: UUID
    template_id: UUID
    task_id: Optional[UUID] = None
    record_id: Optional[UUID] = None


class MemoryUpdate(BaseModel):
    confidence: Optional[float] = Field(None, ge=0, le=100)
    weight: Optional[float] = Field(None, ge=0.1, le=10)
    status: Optional[MemoryStatus] = None
    is_user_preference: Optional[bool] = None


class MemoryListResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    page: int
    per_page: int


class RejectResponse(BaseModel):
    rejected: int
    items: List[Dict[str, Any]]


class CleanupDuplicatesResponse(BaseModel):
    duplicate_groups: int
    deprecated: int
    kept_ids: List[str]


class CleanupResponse(BaseModel):
    stale_deprecated: int
    purged: Dict[str, int]

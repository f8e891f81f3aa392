"""Pydantic schemas for matching endpoints."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class MatchRequest(BaseModel):
    """Rank catalog products for wholesale line items without storing anything."""
    template_id: UUID
    items: List[Dict[str, Any]] = Field(..., min_length=1, max_length=500)
    profile: Optional[str] = Field(None, description="Scoring profile (aggressive, conservative)")
    use_memory: bool = Field(True, description="Include candidates from learned bindings")
    max_candidates: Optional[int] = Field(None, ge=1, le=50)


class MatchItemResult(BaseModel):
    """Candidates for one submitted line item."""
    index: int
    name: Optional[str]
    normalized_name: Optional[str]
    candidates: List[Dict[str, Any]]
    error: Optional[str] = None


class MatchResponse(BaseModel):
    template_id: UUID
    profile: str
    results: List[MatchItemResult]

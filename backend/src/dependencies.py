"""Global FastAPI dependencies.

This module provides:
- get_actor_id: Opaque actor identifier recorded in audit trails
- get_memory_store / get_review_service: Services bound to the request session

Authentication is handled in front of this service; the actor id is taken
as-is from the X-Actor-ID header and only stored for audit.
"""

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from database import get_db
from matching_tasks.review import ReviewService
from memory.service import MemoryStore

ANONYMOUS_ACTOR = "anonymous"


def get_actor_id(x_actor_id: Optional[str] = Header(None, alias="X-Actor-ID")) -> str:
    """Actor performing the request.

    Returns:
        str: Header value, or "anonymous" when the header is missing or blank
    """
    if x_actor_id is None or not x_actor_id.strip():
        return ANONYMOUS_ACTOR
    return x_actor_id.strip()


def get_memory_store(db: Session = Depends(get_db)) -> MemoryStore:
    return MemoryStore(db)


def get_review_service(db: Session = Depends(get_db)) -> ReviewService:
    return ReviewService(db)

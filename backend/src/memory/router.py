"""Memory API endpoints

Learned wholesale-name bindings: learning, rejection, administration and
maintenance.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from dependencies import get_actor_id, get_memory_store
from models.matching_memory import MemoryStatus
from .schemas import (
    CleanupDuplicatesResponse,
    CleanupResponse,
    LearnRequest,
    MatchChangeRequest,
    MemoryListResponse,
    MemoryUpdate,
    RejectRequest,
    RejectResponse,
)
from .service import (
    SORT_OPTIONS,
    LearnProvenance,
    MemoryNotFoundError,
    MemoryStore,
    MemoryStoreError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/memory", tags=["memory"])


@router.post("/learn", status_code=status.HTTP_201_CREATED)
def learn(
    request: LearnRequest,
    store: MemoryStore = Depends(get_memory_store),
    actor_id: str = Depends(get_actor_id),
):
    """
    Remember that a wholesale name means a catalog product.

    Raises:
        HTTPException 400: If the name normalizes to nothing
    """
    try:
        memory = store.learn(
            request.original_name,
            request.product_id,
            request.template_id,
            actor_id,
            confidence=request.confidence,
            provenance=LearnProvenance(request.source, request.task_id, request.record_id),
        )
    except MemoryStoreError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return memory.to_dict()


@router.post("/reject", response_model=RejectResponse)
def reject(
    request: RejectRequest,
    store: MemoryStore = Depends(get_memory_store),
    actor_id: str = Depends(get_actor_id),
):
    """Weaken the binding of a wholesale name to a product."""
    memories = store.reject(
        request.original_name,
        request.product_id,
        actor_id,
        template_id=request.template_id,
        reason=request.reason,
        task_id=request.task_id,
        record_id=request.record_id,
    )
    return RejectResponse(rejected=len(memories), items=[m.to_dict() for m in memories])


@router.post("/change")
def change_match(
    request: MatchChangeRequest,
    store: MemoryStore = Depends(get_memory_store),
    actor_id: str = Depends(get_actor_id),
):
    """Reject the old product and learn the new one for a wholesale name."""
    try:
        memory = store.handle_match_change(
            request.original_name,
            request.old_product_id,
            request.new_product_id,
            request.template_id,
            actor_id,
            task_id=request.task_id,
            record_id=request.record_id,
        )
    except MemoryStoreError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return memory.to_dict()


@router.get("", response_model=MemoryListResponse)
def list_memories(
    template_id: Optional[UUID] = Query(None),
    status_filter: Optional[MemoryStatus] = Query(None, alias="status"),
    source: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Matches original or normalized name"),
    sort: str = Query("trust_score_desc", description=f"One of {', '.join(SORT_OPTIONS)}"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    store: MemoryStore = Depends(get_memory_store),
):
    try:
        memories, total = store.list_memories(
            template_id=template_id,
            status=status_filter.value if status_filter else None,
            source=source,
            search=search,
            sort=sort,
            page=page,
            per_page=per_page,
        )
    except MemoryStoreError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return MemoryListResponse(items=[m.to_dict() for m in memories], total=total, page=page, per_page=per_page)


@router.get("/statistics")
def statistics(
    template_id: Optional[UUID] = Query(None),
    store: MemoryStore = Depends(get_memory_store),
):
    return store.statistics(template_id)


@router.post("/cleanup-duplicates", response_model=CleanupDuplicatesResponse)
def cleanup_duplicates(
    template_id: Optional[UUID] = Query(None),
    store: MemoryStore = Depends(get_memory_store),
    actor_id: str = Depends(get_actor_id),
):
    """Keep one active binding per name, deprecating the rest."""
    result = store.cleanup_duplicates(template_id, actor_id)
    return CleanupDuplicatesResponse(
        duplicate_groups=result.duplicate_groups,
        deprecated=result.deprecated,
        kept_ids=result.kept_ids,
    )


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup(
    older_than_days: Optional[int] = Query(None, ge=1),
    force: bool = Query(False, description="Also delete conflicted and weak stale bindings"),
    template_id: Optional[UUID] = Query(None),
    store: MemoryStore = Depends(get_memory_store),
    actor_id: str = Depends(get_actor_id),
):
    """Deprecate stale bindings, then delete deprecated ones."""
    stale = store.cleanup_stale(older_than_days, template_id, actor_id)
    purged = store.purge(force=force, template_id=template_id, actor_id=actor_id)
    return CleanupResponse(stale_deprecated=stale, purged=purged)


@router.get("/{memory_id}")
def get_memory(memory_id: UUID, store: MemoryStore = Depends(get_memory_store)):
    try:
        return store.get(memory_id).to_dict()
    except MemoryNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.patch("/{memory_id}")
def update_memory(
    memory_id: UUID,
    request: MemoryUpdate,
    store: MemoryStore = Depends(get_memory_store),
    actor_id: str = Depends(get_actor_id),
):
    try:
        memory = store.update(memory_id, actor_id, request.model_dump(exclude_unset=True, mode="json"))
    except MemoryNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except MemoryStoreError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return memory.to_dict()


@router.delete("/{memory_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_memory(
    memory_id: UUID,
    store: MemoryStore = Depends(get_memory_store),
    actor_id: str = Depends(get_actor_id),
):
    try:
        store.delete(memory_id, actor_id)
    except MemoryNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

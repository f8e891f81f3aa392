"""Matching API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from catalog.service import SqlCatalogSource, TemplateNotFoundError
from config import settings
from database import get_db
from memory.service import MemoryStore
from .normalizer import normalize
from .orchestrator import MatchingOrchestrator, catalog_brand_set
from .ports import InvalidLineItemError, MatcherError, WholesaleLineItem
from .schemas import MatchItemResult, MatchRequest, MatchResponse
from .scorer import SimilarityScorer, get_profile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/match", tags=["matching"])


@router.post("", response_model=MatchResponse)
def match_items(request: MatchRequest, db: Session = Depends(get_db)):
    """Rank catalog products for wholesale line items.

    Nothing is persisted: no task, no records, no memory usage.

    Args:
        request: Template, line items and matching options
        db: Database session

    Returns:
        Ranked candidates per line item; malformed items carry an error

    Raises:
        HTTPException 404: If the template does not exist
        HTTPException 400: If the scoring profile is unknown
        HTTPException 500: If matching fails due to system error
    """
    profile_name = request.profile or settings.MATCHING_PROFILE
    try:
        profile = get_profile(profile_name)
        catalog = SqlCatalogSource(db).load_active_catalog(request.template_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    orchestrator = MatchingOrchestrator(
        MemoryStore(db) if request.use_memory else None,
        scorer=SimilarityScorer(profile),
        max_candidates=request.max_candidates,
    )
    brands = catalog_brand_set(catalog)

    results = []
    for index, row in enumerate(request.items):
        try:
            item = WholesaleLineItem.from_row(row)
        except InvalidLineItemError as e:
            results.append(MatchItemResult(index=index, name=None, normalized_name=None, candidates=[], error=str(e)))
            continue
        try:
            candidates = orchestrator.match(item, catalog, request.template_id, brands)
        except MatcherError as e:
            logger.error(f"Matching failed: {e}", exc_info=True)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
        results.append(MatchItemResult(
            index=index,
            name=item.name,
            normalized_name=normalize(item.name),
            candidates=[candidate.to_dict() for candidate in candidates],
        ))

    return MatchResponse(template_id=request.template_id, profile=profile.name, results=results)

"""Matching orchestrator combining learned memory and similarity scoring.

Pipeline for one line item:
1. Look up learned bindings (memory) for the normalized wholesale name
2. Turn every memory hit whose product is in the catalog snapshot into a
   boosted memory candidate
3. Score every other catalog entry, keep those at or above the floor
4. Memory candidates first, then by total score; rank from 1; keep the top N
"""

import logging
import time
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from config import settings
from observability.metrics import record_candidate_score
from .normalizer import normalize, build_brand_set
from .ports import (
    CatalogEntry,
    MatchCandidate,
    MatcherError,
    MatchReason,
    MemorySource,
    ScoreBreakdown,
    WholesaleLineItem,
)
from .scorer import ScoringProfile, SimilarityScorer, clip_score, get_profile

logger = logging.getLogger(__name__)


def memory_candidate_score(trust_score: float, confirm_count: int) -> int:
    """Boosted score of a memory candidate, never below 80."""
    return clip_score(min(100, max(80, trust_score + min(20, confirm_count * 3) + 15)))


def catalog_brand_set(catalog: Iterable[CatalogEntry]) -> frozenset:
    return build_brand_set(entry.brand for entry in catalog)


class MatchingOrchestrator:
    """Produce ranked candidates for wholesale line items.

    The memory store is optional; without it only similarity scoring runs.
    Nothing is written: remembering and usage tracking happen in the memory
    store's own operations.
    """

    def __init__(
        self,
        memory_store=None,
        scorer: Optional[SimilarityScorer] = None,
        candidate_floor: Optional[int] = None,
        max_candidates: Optional[int] = None,
        memory_min_confidence: Optional[int] = None,
        memory_limit: Optional[int] = None,
    ):
        self.memory_store = memory_store
        self.scorer = scorer or SimilarityScorer(get_profile(settings.MATCHING_PROFILE))
        self.candidate_floor = (
            settings.MATCHING_CANDIDATE_FLOOR if candidate_floor is None else candidate_floor
        )
        self.max_candidates = max_candidates or settings.MATCHING_MAX_CANDIDATES
        self.memory_min_confidence = (
            settings.MEMORY_MIN_CONFIDENCE if memory_min_confidence is None else memory_min_confidence
        )
        self.memory_limit = memory_limit or settings.MEMORY_LOOKUP_LIMIT

    @property
    def profile(self) -> ScoringProfile:
        return self.scorer.profile

    def match(
        self,
        item: WholesaleLineItem,
        catalog: Sequence[CatalogEntry],
        template_id: UUID,
        brand_set: Optional[Iterable[str]] = None,
    ) -> List[MatchCandidate]:
        """Rank catalog products for one line item.

        Args:
            item: Wholesale line item
            catalog: Catalog snapshot of the template
            template_id: Template the memory lookup is scoped to
            brand_set: Normalized brands; derived from the catalog when omitted

        Returns:
            Up to max_candidates candidates, ranked from 1

        Raises:
            MatcherError: If matching fails due to system error
        """
        normalized = normalize(item.name)
        if not normalized or not catalog:
            return []

        started = time.perf_counter()
        brands = frozenset(brand_set) if brand_set is not None else catalog_brand_set(catalog)
        try:
            by_id: Dict[UUID, CatalogEntry] = {entry.id: entry for entry in catalog}

            memory_candidates = self._memory_candidates(normalized, template_id, by_id)
            covered = {candidate.product_id for candidate in memory_candidates}

            scored: List[MatchCandidate] = []
            for entry in catalog:
                if entry.id in covered:
                    continue
                result = self.scorer.evaluate(item, entry, brands)
                if result.total < self.candidate_floor:
                    continue
                scored.append(MatchCandidate(
                    product_id=entry.id,
                    product_name=entry.name,
                    brand=entry.brand,
                    score=result.breakdown,
                    confidence_tier=result.confidence_tier,
                    reasons=result.reasons,
                ))

            memory_candidates.sort(key=lambda c: c.total, reverse=True)
            scored.sort(key=lambda c: c.total, reverse=True)
            ranked = [
                replace(candidate, rank=position)
                for position, candidate in enumerate(
                    (memory_candidates + scored)[: self.max_candidates], start=1
                )
            ]
        except MatcherError:
            raise
        except Exception as e:
            raise MatcherError(f"Matching failed: {str(e)}") from e

        if ranked:
            record_candidate_score(ranked[0].total)
        logger.debug(
            "Matched line item",
            extra={
                "normalized_name": normalized,
                "candidates": len(ranked),
                "memory_candidates": len(memory_candidates),
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return ranked

    def match_batch(
        self,
        items: Sequence[WholesaleLineItem],
        catalog: Sequence[CatalogEntry],
        template_id: UUID,
        brand_set: Optional[Iterable[str]] = None,
    ) -> List[List[MatchCandidate]]:
        """Match multiple line items against one snapshot (same order as items)."""
        brands = frozenset(brand_set) if brand_set is not None else catalog_brand_set(catalog)
        return [self.match(item, catalog, template_id, brands) for item in items]

    def _memory_candidates(
        self,
        normalized: str,
        template_id: UUID,
        by_id: Dict[UUID, CatalogEntry],
    ) -> List[MatchCandidate]:
        if self.memory_store is None:
            return []

        memories = self.memory_store.find_matching(
            normalized,
            template_id,
            min_confidence=self.memory_min_confidence,
            limit=self.memory_limit,
        )

        candidates: List[MatchCandidate] = []
        seen = set()
        for memory in memories:
            entry = by_id.get(memory.product_id)
            if entry is None or entry.id in seen:
                continue
            seen.add(entry.id)

            trust = memory.trust_score
            total = memory_candidate_score(trust, memory.confirm_count)
            source = MemorySource(
                memory_id=memory.id,
                normalized_name=memory.normalized_name,
                confirm_count=memory.confirm_count,
                weight=float(memory.weight),
                trust_score=round(trust, 2),
                is_high_trust=memory.is_high_trust,
            )
            candidates.append(MatchCandidate(
                product_id=entry.id,
                product_name=entry.name,
                brand=entry.brand,
                score=ScoreBreakdown(
                    name=total, brand=100, keywords=100, package=100,
                    price=50, total=total, strategy="memory",
                ),
                confidence_tier=self.profile.tier_for(total),
                reasons=(MatchReason(
                    "memory_match",
                    f"Learned binding confirmed {memory.confirm_count} time(s)",
                    round(trust / 100, 2),
                ),),
                is_memory_match=True,
                memory_source=source,
            ))
        return candidates

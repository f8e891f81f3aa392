"""Similarity scoring between a wholesale name and a catalog product.

Rules are tried in priority order and the first one that applies decides
the name score:

1. brand conflict (two different detected brands) -> fixed low score
2. exact match after normalization
3. exact match after removing the shared brand
4. specification-only guard: the names differ only by a short remainder
   and the brands differ -> capped at the spec-only cap
5. tolerant match on deep-normalized, brand-free, sorted characters
6. containment, partial containment, keyword overlap
7. Levenshtein / character Jaccard fallback

A price proximity adjustment is added to every score except a brand
conflict. All cutoffs live in a ScoringProfile.
"""

import math
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from rapidfuzz.distance import Levenshtein

from .normalizer import (
    normalize,
    deep_normalize,
    expand_parentheses,
    detect_brand,
    remove_brand,
    strip_spec_tokens,
    spec_tokens,
    extract_keywords,
    char_jaccard,
)
from .ports import CatalogEntry, ConfidenceTier, MatchReason, ScoreBreakdown, WholesaleLineItem


@dataclass(frozen=True)
class ScoringProfile:
    """Weights and cutoffs of the scorer.

    The default ("aggressive") profile is name-first: a matching name is
    trusted even when other fields are missing. The conservative profile
    narrows the upper bands and raises the tier cutoffs.
    """
    name: str = "aggressive"
    brand_conflict_score: int = 15
    exact_score: int = 100
    brand_stripped_score: int = 98
    tolerant_sorted_score: int = 97
    tolerant_contained_score: int = 95
    containment_min: int = 80
    containment_max: int = 95
    partial_containment_score: int = 75
    keyword_min: int = 60
    keyword_max: int = 85
    spec_only_cap: int = 50
    levenshtein_weight: float = 0.7
    jaccard_weight: float = 0.3
    high_similarity_bonus: int = 10
    medium_similarity_bonus: int = 5
    max_price_adjustment: int = 10
    high_tier: int = 80
    medium_tier: int = 60

    def tier_for(self, total: float) -> ConfidenceTier:
        if total >= self.high_tier:
            return ConfidenceTier.HIGH
        if total >= self.medium_tier:
            return ConfidenceTier.MEDIUM
        return ConfidenceTier.LOW

    def with_tiers(self, high: int, medium: int) -> "ScoringProfile":
        return replace(self, high_tier=high, medium_tier=medium)


PROFILES: Dict[str, ScoringProfile] = {
    "aggressive": ScoringProfile(),
    "conservative": ScoringProfile(
        name="conservative",
        tolerant_sorted_score=94,
        tolerant_contained_score=90,
        containment_min=75,
        containment_max=90,
        partial_containment_score=70,
        keyword_min=55,
        keyword_max=80,
        spec_only_cap=40,
        high_tier=85,
        medium_tier=65,
    ),
}


def get_profile(name: str) -> ScoringProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown scoring profile '{name}'. Known: {sorted(PROFILES)}")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clip_score(value: float) -> int:
    return max(0, min(100, round_half_up(value)))


def combined_similarity(a: str, b: str, levenshtein_weight: float = 0.7, jaccard_weight: float = 0.3) -> float:
    """Weighted Levenshtein + character Jaccard similarity in [0, 1]."""
    if not a or not b:
        return 0.0
    return (
        levenshtein_weight * Levenshtein.normalized_similarity(a, b)
        + jaccard_weight * char_jaccard(a, b)
    )


@dataclass(frozen=True)
class ScoreResult:
    breakdown: ScoreBreakdown
    confidence_tier: ConfidenceTier
    reasons: Tuple[MatchReason, ...]

    @property
    def total(self) -> int:
        return self.breakdown.total


class SimilarityScorer:
    """Score wholesale line items against catalog entries.

    Stateless apart from its profile; the brand set is passed on every call
    so concurrent tasks never share mutable brand state.
    """

    def __init__(self, profile: Optional[ScoringProfile] = None):
        self.profile = profile or ScoringProfile()

    def score(
        self,
        item: WholesaleLineItem,
        entry: CatalogEntry,
        brand_set: Iterable[str],
    ) -> ScoreBreakdown:
        return self.evaluate(item, entry, brand_set).breakdown

    def evaluate(
        self,
        item: WholesaleLineItem,
        entry: CatalogEntry,
        brand_set: Iterable[str],
    ) -> ScoreResult:
        """Score one pair and explain the score.

        Args:
            item: Wholesale line item
            entry: Catalog entry
            brand_set: Normalized brand names used for brand detection

        Returns:
            ScoreResult with breakdown, tier and typed reasons
        """
        profile = self.profile
        brands: FrozenSet[str] = frozenset(brand_set)
        n1 = normalize(item.name)
        n2 = normalize(entry.name)

        if not n1 or not n2:
            return self._result(0, 0, 50, 0, 50, 50, "empty_name", [
                MatchReason("name_similarity", "Empty product name", 0.0),
            ])

        b1 = detect_brand(n1, brands)
        b2 = detect_brand(n2, brands) or normalize(entry.brand) or None

        if b1 and b2 and b1 != b2:
            return self._result(
                profile.brand_conflict_score, 0, 0, 0, 50, 50, "brand_conflict",
                [MatchReason(
                    "brand_conflict",
                    f"Brand mismatch: {b1} vs {b2}",
                    0.0,
                )],
            )

        same_brand = b1 == b2
        r1 = remove_brand(n1, b1)
        r2 = remove_brand(n2, b2)
        kw1 = extract_keywords(n1, b1)
        kw2 = extract_keywords(n2, b2) | self._entry_keywords(entry, b2)
        keyword_jaccard = self._jaccard(kw1, kw2)

        reasons: List[MatchReason] = []
        cap: Optional[int] = None

        if n1 == n2:
            name_score, strategy = profile.exact_score, "exact"
            reasons.append(MatchReason("exact_name", "Names are identical after normalization", 1.0))
        elif same_brand and r1 and r1 == r2:
            name_score, strategy = profile.brand_stripped_score, "brand_stripped_exact"
            reasons.append(MatchReason("exact_name", "Names are identical apart from the brand", 0.98))
        else:
            s1, s2 = strip_spec_tokens(r1), strip_spec_tokens(r2)
            spec_driven = (len(s1) <= 2 or len(s2) <= 2) and s1 != s2
            tolerant = None if (spec_driven and not same_brand) else self._tolerant(item, entry, b1, b2)

            if spec_driven and not same_brand:
                name_score = self._fallback_score(n1, n2)
                strategy = "spec_only"
                cap = profile.spec_only_cap
                reasons.append(MatchReason(
                    "package_type",
                    "Names differ only by specification and brands differ",
                    0.5,
                ))
            elif tolerant is not None:
                name_score, strategy = tolerant
                reasons.append(MatchReason("name_similarity", "Same characters after tolerant normalization", 0.95))
            else:
                name_score, strategy = self._containment(n1, n2, r1, r2, keyword_jaccard)
                if strategy == "keyword_overlap":
                    reasons.append(MatchReason(
                        "keyword_match",
                        f"Shared keywords: {', '.join(sorted(kw1 & kw2))}",
                        round(keyword_jaccard, 2),
                    ))
                elif strategy != "fallback":
                    reasons.append(MatchReason("name_similarity", "One name contains the other", 0.8))
                else:
                    name_score = self._fallback_score(n1, n2)
                    reasons.append(MatchReason(
                        "name_similarity",
                        "Edit distance similarity",
                        round(name_score / 100, 2),
                    ))

        if same_brand and b1:
            reasons.append(MatchReason("brand_match", f"Same brand: {b1}", 1.0))

        adjustment = self.price_adjustment(item.price, entry.price)
        if adjustment:
            reasons.append(MatchReason(
                "price_range",
                "Price close to catalog price" if adjustment > 0 else "Price far from catalog price",
                adjustment / profile.max_price_adjustment,
            ))

        total = clip_score(name_score + adjustment)
        if cap is not None:
            total = min(cap, total)

        brand_component = 100 if (same_brand and b1) else 50
        return self._result(
            total,
            clip_score(name_score),
            brand_component,
            clip_score(keyword_jaccard * 100),
            self._package_score(n1, n2),
            clip_score(50 + 5 * adjustment),
            strategy,
            reasons,
        )

    def price_adjustment(self, wholesale_price: Optional[Decimal], catalog_price: Optional[Decimal]) -> int:
        """Bonus/penalty in [-max, +max] for the gap between two prices."""
        if not wholesale_price or not catalog_price:
            return 0
        wholesale = Decimal(str(wholesale_price))
        catalog = Decimal(str(catalog_price))
        if wholesale <= 0 or catalog <= 0:
            return 0

        maximum = self.profile.max_price_adjustment
        gap = abs(wholesale - catalog)
        relative = gap / max(wholesale, catalog)
        if gap <= Decimal("0.5") or relative <= Decimal("0.05"):
            return maximum
        if relative <= Decimal("0.10"):
            return maximum // 2
        if relative <= Decimal("0.30"):
            return 0
        if relative <= Decimal("0.50"):
            return -(maximum // 2)
        return -maximum

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _tolerant(
        self,
        item: WholesaleLineItem,
        entry: CatalogEntry,
        b1: Optional[str],
        b2: Optional[str],
    ) -> Optional[Tuple[int, str]]:
        if b1 != b2:
            return None
        t1 = deep_normalize(expand_parentheses(item.name))
        t2 = deep_normalize(expand_parentheses(entry.name))
        brand = deep_normalize(b1) if b1 else None
        t1 = remove_brand(t1, brand)
        t2 = remove_brand(t2, brand)
        if not t1 or not t2:
            return None
        if sorted(t1) == sorted(t2):
            return self.profile.tolerant_sorted_score, "tolerant_sorted"
        if abs(len(t1) - len(t2)) <= 1 and (t1 in t2 or t2 in t1):
            return self.profile.tolerant_contained_score, "tolerant_contained"
        return None

    def _containment(
        self,
        n1: str,
        n2: str,
        r1: str,
        r2: str,
        keyword_jaccard: float,
    ) -> Tuple[float, str]:
        profile = self.profile
        if n1 in n2 or n2 in n1:
            ratio = min(len(n1), len(n2)) / max(len(n1), len(n2))
            span = profile.containment_max - profile.containment_min
            return profile.containment_min + span * ratio, "containment"

        if r1 and r2:
            shorter, longer = sorted((r1, r2), key=len)
            if len(shorter) >= 2 and shorter in longer:
                return profile.partial_containment_score, "partial_containment"

        if keyword_jaccard > 0:
            span = profile.keyword_max - profile.keyword_min
            return profile.keyword_min + span * keyword_jaccard, "keyword_overlap"

        return 0, "fallback"

    def _fallback_score(self, n1: str, n2: str) -> float:
        profile = self.profile
        similarity = combined_similarity(n1, n2, profile.levenshtein_weight, profile.jaccard_weight)
        bonus = 0
        if similarity > 0.9:
            bonus = profile.high_similarity_bonus
        elif similarity > 0.8:
            bonus = profile.medium_similarity_bonus
        return similarity * 100 + bonus

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @staticmethod
    def _entry_keywords(entry: CatalogEntry, brand: Optional[str]) -> Set[str]:
        keywords = set()
        for keyword in entry.keywords:
            norm = normalize(keyword)
            if len(norm) >= 2 and norm != brand:
                keywords.add(norm)
        return keywords

    @staticmethod
    def _jaccard(a: Set[str], b: Set[str]) -> float:
        if not a or not b:
            return 0.0
        return len(a & b) / len(a | b)

    @staticmethod
    def _package_score(n1: str, n2: str) -> int:
        tokens1 = spec_tokens(deep_normalize(n1))
        tokens2 = spec_tokens(deep_normalize(n2))
        if tokens1 == tokens2:
            return 100 if tokens1 else 50
        if not tokens1 or not tokens2:
            return 50
        if tokens1 & tokens2:
            return 75
        return 0

    def _result(
        self,
        total: int,
        name: int,
        brand: int,
        keywords: int,
        package: int,
        price: int,
        strategy: str,
        reasons: List[MatchReason],
    ) -> ScoreResult:
        breakdown = ScoreBreakdown(
            name=int(name),
            brand=int(brand),
            keywords=int(keywords),
            package=int(package),
            price=int(price),
            total=int(total),
            strategy=strategy,
        )
        return ScoreResult(
            breakdown=breakdown,
            confidence_tier=self.profile.tier_for(total),
            reasons=tuple(reasons),
        )

"""Matching module for the wholesale matcher.

This module ranks catalog products for free-text wholesale names:
- Learned bindings from the memory store (memory candidates)
- Rule-based similarity scoring (exact, tolerant, containment, fuzzy)
- Price adjustment against the catalog price
"""

from .ports import (
    CatalogEntry,
    ConfidenceTier,
    InvalidLineItemError,
    MatchCandidate,
    MatcherError,
    WholesaleLineItem,
)
from .scorer import SimilarityScorer, ScoringProfile, get_profile
from .orchestrator import MatchingOrchestrator

__all__ = [
    "CatalogEntry",
    "ConfidenceTier",
    "InvalidLineItemError",
    "MatchCandidate",
    "MatcherError",
    "WholesaleLineItem",
    "SimilarityScorer",
    "ScoringProfile",
    "get_profile",
    "MatchingOrchestrator",
]

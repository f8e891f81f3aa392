"""SQLAlchemy models for the wholesale matcher"""

from .base import Base
from .product import Product, ProductTemplate
from .matching_memory import MatchingMemory, MemoryStatus, LearnSource
from .matching_task import MatchingTask
from .matching_record import (
    MatchingRecord,
    MatchType,
    ExceptionType,
    Severity,
    Priority,
    ReviewAction,
)

__all__ = [
    "Base",
    "Product",
    "ProductTemplate",
    "MatchingMemory",
    "MemoryStatus",
    "LearnSource",
    "MatchingTask",
    "MatchingRecord",
    "MatchType",
    "ExceptionType",
    "Severity",
    "Priority",
    "ReviewAction",
]

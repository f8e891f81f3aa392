"""Matching ports and value types.

The matching core works on immutable value objects and talks to the catalog
through two ports: a read-only catalog source and a price propagation sink.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Column aliases accepted for submitted rows (English and the usual Chinese headers)
NAME_KEYS = ("name", "wholesale_name", "批发名", "批发名称", "商品名称", "产品名称", "名称")
PRICE_KEYS = ("price", "wholesale_price", "批发价格", "批发价", "价格", "单价")
QUANTITY_KEYS = ("quantity", "qty", "数量")
UNIT_KEYS = ("unit", "单位")
SUPPLIER_KEYS = ("supplier", "供应商")

_PRICE_NOISE = re.compile(r"[¥￥$,，\s元]")


class MatcherError(Exception):
    """Exception raised for matching errors."""
    pass


class InvalidLineItemError(MatcherError):
    """A submitted row cannot be turned into a line item."""
    pass


def _first_value(row: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None and str(value).strip() != "":
            return value
    return None


def parse_price(value: Any) -> Optional[Decimal]:
    """Parse a price cell such as "¥1,250.00" or "95元"; empty -> None."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidLineItemError(f"Invalid price: {value!r}")
    cleaned = _PRICE_NOISE.sub("", str(value))
    if not cleaned:
        return None
    try:
        price = Decimal(cleaned)
    except InvalidOperation:
        raise InvalidLineItemError(f"Invalid price: {value!r}")
    if not price.is_finite() or price < 0:
        raise InvalidLineItemError(f"Price must be >= 0, got {value!r}")
    return price


@dataclass(frozen=True)
class WholesaleLineItem:
    """One wholesale line as submitted by the customer.

    Attributes:
        name: Free-text wholesale product name (required)
        price: Wholesale price (>= 0) if known
        quantity: Ordered quantity (>= 0)
        unit: Unit label from the sheet
        supplier: Supplier label from the sheet
        raw: The submitted row, kept for audit
    """
    name: str
    price: Optional[Decimal] = None
    quantity: int = 1
    unit: Optional[str] = None
    supplier: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WholesaleLineItem":
        """Build a line item from a submitted row dict.

        Raises:
            InvalidLineItemError: If the name is missing or a number is malformed
        """
        if not isinstance(row, dict):
            raise InvalidLineItemError(f"Line item must be an object, got {type(row).__name__}")

        name = _first_value(row, NAME_KEYS)
        if name is None:
            raise InvalidLineItemError("Line item has no product name")

        quantity_value = _first_value(row, QUANTITY_KEYS)
        quantity = 1
        if quantity_value is not None:
            try:
                quantity = int(Decimal(str(quantity_value).strip()))
            except (InvalidOperation, ValueError, OverflowError):
                raise InvalidLineItemError(f"Invalid quantity: {quantity_value!r}")
            if quantity < 0:
                raise InvalidLineItemError(f"Quantity must be >= 0, got {quantity_value!r}")

        unit = _first_value(row, UNIT_KEYS)
        supplier = _first_value(row, SUPPLIER_KEYS)
        return cls(
            name=str(name).strip(),
            price=parse_price(_first_value(row, PRICE_KEYS)),
            quantity=quantity,
            unit=str(unit).strip() if unit is not None else None,
            supplier=str(supplier).strip() if supplier is not None else None,
            raw=dict(row),
        )


@dataclass(frozen=True)
class CatalogEntry:
    """Read-only snapshot of one catalog product."""
    id: UUID
    name: str
    template_id: UUID
    brand: Optional[str] = None
    price: Optional[Decimal] = None
    keywords: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MatchReason:
    """Typed, human-readable explanation of a score."""
    type: str
    description: str
    weight: float = 1.0


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-feature scores, each 0-100; total is the ranking score."""
    name: int
    brand: int
    keywords: int
    package: int
    price: int
    total: int
    strategy: str


@dataclass(frozen=True)
class MemorySource:
    """Memory record that produced a memory candidate."""
    memory_id: UUID
    normalized_name: str
    confirm_count: int
    weight: float
    trust_score: float
    is_high_trust: bool


@dataclass(frozen=True)
class MatchCandidate:
    """Ranked product candidate for one line item.

    Attributes:
        product_id: Catalog product UUID
        product_name: Product name for display
        brand: Product brand for display
        score: Score breakdown
        confidence_tier: high/medium/low by the scoring profile
        reasons: Why the product was proposed
        rank: 1-based position in the ranked list
        is_memory_match: True if proposed from a learned binding
        memory_source: The learned binding, for memory matches
    """
    product_id: UUID
    product_name: str
    score: ScoreBreakdown
    confidence_tier: ConfidenceTier
    reasons: Tuple[MatchReason, ...] = ()
    brand: Optional[str] = None
    rank: int = 0
    is_memory_match: bool = False
    memory_source: Optional[MemorySource] = None

    @property
    def total(self) -> int:
        return self.score.total

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form, embedded into matching records."""
        memory = None
        if self.memory_source is not None:
            memory = asdict(self.memory_source)
            memory["memory_id"] = str(self.memory_source.memory_id)
        return {
            "product_id": str(self.product_id),
            "product_name": self.product_name,
            "brand": self.brand,
            "score": asdict(self.score),
            "confidence_tier": self.confidence_tier.value,
            "reasons": [asdict(r) for r in self.reasons],
            "rank": self.rank,
            "is_memory_match": self.is_memory_match,
            "memory_source": memory,
        }


class CatalogSourcePort(ABC):
    """Read-only access to the catalog of one template."""

    @abstractmethod
    def load_active_catalog(self, template_id: UUID) -> List[CatalogEntry]:
        """Load the active products of a template as an immutable snapshot.

        Raises:
            TemplateNotFoundError: If the template does not exist
        """
        pass


class PriceSinkPort(ABC):
    """Receives wholesale prices of confirmed matches."""

    @abstractmethod
    def apply_wholesale_price(
        self,
        product_id: UUID,
        name: str,
        price: Decimal,
        unit: Optional[str],
        source_record_id: Optional[UUID],
    ) -> None:
        pass

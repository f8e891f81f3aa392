"""Catalog collaborator: read-only snapshots and wholesale price write-back."""

import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from config import settings
from matching.ports import CatalogEntry, CatalogSourcePort, PriceSinkPort
from models.base import utcnow
from models.product import Product, ProductTemplate
from observability.metrics import price_propagation_failures_total

logger = logging.getLogger(__name__)

PRICE_SOURCE = "matching"


class CatalogError(Exception):
    """Catalog data cannot support a matching pass."""
    pass


class TemplateNotFoundError(CatalogError):
    pass


class EmptyCatalogError(CatalogError):
    pass


def to_catalog_entry(product: Product) -> CatalogEntry:
    return CatalogEntry(
        id=product.id,
        name=product.name,
        template_id=product.template_id,
        brand=product.brand,
        price=Decimal(str(product.company_price)) if product.company_price is not None else None,
        keywords=tuple(product.keywords or ()),
    )


class SqlCatalogSource(CatalogSourcePort):
    """Catalog snapshots read from the product table."""

    def __init__(self, db: Session):
        self.db = db

    def load_active_catalog(self, template_id: UUID) -> List[CatalogEntry]:
        template = self.db.get(ProductTemplate, template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")

        products = (
            self.db.query(Product)
            .filter(Product.template_id == template_id, Product.active.is_(True))
            .order_by(Product.name, Product.id)
            .all()
        )
        return [to_catalog_entry(product) for product in products]


class SqlPriceSink(PriceSinkPort):
    """Writes the latest confirmed wholesale price onto the product row.

    The caller owns the transaction; nothing is committed here.
    """

    def __init__(self, db: Session):
        self.db = db

    def apply_wholesale_price(
        self,
        product_id: UUID,
        name: str,
        price: Decimal,
        unit: Optional[str],
        source_record_id: Optional[UUID],
    ) -> None:
        product = self.db.get(Product, product_id)
        if product is None:
            raise CatalogError(f"Product {product_id} not found")
        product.wholesale_name = name
        product.wholesale_price = price
        product.wholesale_unit = unit or settings.DEFAULT_WHOLESALE_UNIT
        product.wholesale_source = PRICE_SOURCE
        product.wholesale_updated_at = utcnow()
        product.last_matching_record_id = source_record_id


def propagate_wholesale_price(
    sink: Optional[PriceSinkPort],
    product_id: UUID,
    name: str,
    price: Optional[Decimal],
    unit: Optional[str],
    source_record_id: Optional[UUID],
) -> bool:
    """Forward a confirmed price to the sink; failures are logged, never raised.

    Returns:
        True if the sink accepted the price
    """
    if sink is None or price is None or Decimal(str(price)) <= 0:
        return False
    try:
        sink.apply_wholesale_price(
            product_id,
            name,
            Decimal(str(price)),
            unit or settings.DEFAULT_WHOLESALE_UNIT,
            source_record_id,
        )
        return True
    except Exception as e:
        price_propagation_failures_total.inc()
        logger.error(
            f"Wholesale price propagation failed: {e}",
            extra={"product_id": product_id, "record_id": source_record_id},
            exc_info=True,
        )
        return False

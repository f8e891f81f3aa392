"""Catalog SQLAlchemy models (templates and products)"""

from uuid import uuid4

from sqlalchemy import Column, Text, ForeignKey, Boolean, Numeric, Index, DateTime, Uuid
from sqlalchemy.orm import relationship

from .base import Base, PortableJSONB, utcnow, isoformat


class ProductTemplate(Base):
    """Catalog partition.

    Every product and every learned memory belongs to exactly one template, so
    the same wholesale name can be bound to different products in different
    catalogs.
    """
    __tablename__ = "product_template"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(Text, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    products = relationship("Product", back_populates="template", cascade="all, delete-orphan")

    def to_dict(self):
        """Convert template to dictionary representation"""
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "active": self.active,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class Product(Base):
    """Catalog product the wholesale names are matched against.

    The wholesale_* columns are written back by the price propagation sink
    whenever a matching record bound to this product is confirmed.
    """
    __tablename__ = "product"
    __table_args__ = (
        Index("ix_product_template_active", "template_id", "active"),
        Index("ix_product_brand", "brand"),
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    template_id = Column(Uuid, ForeignKey("product_template.id", ondelete="CASCADE"), nullable=False)
    name = Column(Text, nullable=False)
    brand = Column(Text, nullable=True)
    product_code = Column(Text, nullable=True)
    keywords = Column(PortableJSONB, nullable=False, default=list)
    company_price = Column(Numeric(precision=12, scale=2), nullable=True, comment="Catalog reference price")
    active = Column(Boolean, nullable=False, default=True)

    wholesale_name = Column(Text, nullable=True, comment="Last confirmed wholesale name")
    wholesale_price = Column(Numeric(precision=12, scale=2), nullable=True)
    wholesale_unit = Column(Text, nullable=True)
    wholesale_source = Column(Text, nullable=True)
    wholesale_updated_at = Column(DateTime(timezone=True), nullable=True)
    last_matching_record_id = Column(Uuid, nullable=True, comment="Record that last propagated a price")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    template = relationship("ProductTemplate", back_populates="products")

    def to_dict(self):
        """Convert product to dictionary representation"""
        return {
            "id": str(self.id),
            "template_id": str(self.template_id),
            "name": self.name,
            "brand": self.brand,
            "product_code": self.product_code,
            "keywords": list(self.keywords or []),
            "company_price": float(self.company_price) if self.company_price is not None else None,
            "active": self.active,
            "wholesale": {
                "name": self.wholesale_name,
                "price": float(self.wholesale_price) if self.wholesale_price is not None else None,
                "unit": self.wholesale_unit,
                "source": self.wholesale_source,
                "updated_at": isoformat(self.wholesale_updated_at),
                "last_matching_record_id": (
                    str(self.last_matching_record_id) if self.last_matching_record_id else None
                ),
            },
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

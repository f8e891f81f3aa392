"""Catalog API endpoints (templates and products)"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from database import get_db
from models.product import Product, ProductTemplate
from .schemas import ProductCreate, ProductListResponse, ProductUpdate, TemplateCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["catalog"])


# ============================================================================
# Template Endpoints
# ============================================================================

@router.post("/templates", status_code=status.HTTP_201_CREATED)
def create_template(template_data: TemplateCreate, db: Session = Depends(get_db)):
    """
    Create a catalog template.

    Raises:
        HTTPException 400: If a template with the same name already exists
    """
    existing = db.query(ProductTemplate).filter(ProductTemplate.name == template_data.name).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Template '{template_data.name}' already exists",
        )

    template = ProductTemplate(
        name=template_data.name,
        description=template_data.description,
        active=template_data.active,
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return template.to_dict()


@router.get("/templates")
def list_templates(db: Session = Depends(get_db)):
    templates = db.query(ProductTemplate).order_by(ProductTemplate.name).all()
    return [t.to_dict() for t in templates]


@router.get("/templates/{template_id}")
def get_template(template_id: UUID, db: Session = Depends(get_db)):
    template = db.get(ProductTemplate, template_id)
    if not template:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    return template.to_dict()


# ============================================================================
# Product Endpoints
# ============================================================================

@router.post("/products", status_code=status.HTTP_201_CREATED)
def create_product(product_data: ProductCreate, db: Session = Depends(get_db)):
    """
    Add a product to a catalog template.

    Raises:
        HTTPException 404: If the template does not exist
    """
    if db.get(ProductTemplate, product_data.template_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")

    product = Product(**product_data.model_dump())
    db.add(product)
    db.commit()
    db.refresh(product)
    return product.to_dict()


@router.get("/products", response_model=ProductListResponse)
def list_products(
    template_id: Optional[UUID] = Query(None),
    search: Optional[str] = Query(None, description="Search term for name, brand or code"),
    active: Optional[bool] = Query(None, description="Filter by active status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """List products with search and pagination."""
    query = db.query(Product)
    if template_id is not None:
        query = query.filter(Product.template_id == template_id)
    if active is not None:
        query = query.filter(Product.active == active)
    if search:
        search_term = f"%{search}%"
        query = query.filter(
            or_(
                Product.name.ilike(search_term),
                Product.brand.ilike(search_term),
                Product.product_code.ilike(search_term),
            )
        )

    total = query.count()
    products = query.order_by(Product.name, Product.id).offset(offset).limit(limit).all()
    return ProductListResponse(items=[p.to_dict() for p in products], total=total)


@router.get("/products/{product_id}")
def get_product(product_id: UUID, db: Session = Depends(get_db)):
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return product.to_dict()


@router.patch("/products/{product_id}")
def update_product(product_id: UUID, product_data: ProductUpdate, db: Session = Depends(get_db)):
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    for field, value in product_data.model_dump(exclude_unset=True).items():
        setattr(product, field, value)
    db.commit()
    db.refresh(product)
    return product.to_dict()

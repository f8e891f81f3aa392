"""Pydantic schemas for catalog domain (templates, products)"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class TemplateCreate(BaseModel):
    """Schema for creating a catalog template"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    active: bool = True


class ProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=500)
    brand: Optional[str] = Field(None, max_length=100)
    product_code: Optional[str] = Field(None, max_length=100)
    keywords: List[str] = Field(default_factory=list)
    company_price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    active: bool = True

    @field_validator("keywords")
    @classmethod
    def strip_keywords(cls, v: List[str]) -> List[str]:
        return [k.strip() for k in v if k and k.strip()]


class ProductCreate(ProductBase):
    """Schema for creating a catalog product"""
    template_id: UUID


class ProductUpdate(BaseModel):
    """Schema for updating a catalog product (all fields optional)"""
    name: Optional[str] = Field(None, min_length=1, max_length=500)
    brand: Optional[str] = Field(None, max_length=100)
    product_code: Optional[str] = Field(None, max_length=100)
    keywords: Optional[List[str]] = None
    company_price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    active: Optional[bool] = None


class ProductListResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int

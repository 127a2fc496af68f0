"""Read-only product listing for inspecting import and migration results."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bulkops.api.dependencies.db import get_session
from bulkops.api.schemas.product import ProductListResponse, ProductRead
from bulkops.db.models.product import Product

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/",
    summary="List products with filters and pagination",
    response_model=ProductListResponse,
)
async def list_products(
    sku: str | None = Query(None, description="Filter by SKU (case-insensitive)"),
    name: str | None = Query(None, description="Filter by name (partial match)"),
    active: bool | None = Query(None, description="Filter by active status"),
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
    db: Session = Depends(get_session),
) -> ProductListResponse:
    """Only non-deleted products; filters combine with AND."""
    conditions = [Product.is_deleted.is_(False)]
    if sku:
        conditions.append(func.lower(Product.sku).contains(sku.lower()))
    if name:
        conditions.append(Product.name.ilike(f"%{name}%"))
    if active is not None:
        conditions.append(Product.active == active)

    try:
        total = db.scalar(select(func.count(Product.id)).where(*conditions)) or 0
        items = db.scalars(
            select(Product)
            .where(*conditions)
            .order_by(Product.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
    except SQLAlchemyError as exc:
        logger.error(f"Database error listing products: {exc}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to retrieve products") from exc

    return ProductListResponse(
        items=[ProductRead.model_validate(p) for p in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{product_id}", summary="Fetch one product", response_model=ProductRead)
async def get_product(product_id: int, db: Session = Depends(get_session)) -> ProductRead:
    product = db.get(Product, product_id)
    if product is None or product.is_deleted:
        raise HTTPException(status_code=404, detail="Product not found")
    return ProductRead.model_validate(product)

"""Read models for products touched by bulk jobs."""

from datetime import datetime

from pydantic import BaseModel, Field


class ProductRead(BaseModel):
    id: int
    sku: str = Field(..., description="Case-insensitive unique SKU")
    name: str
    description: str | None = None
    active: bool = True
    is_deleted: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = Field(None, description="Last change by a job or its rollback")

    model_config = {"from_attributes": True}


class ProductListResponse(BaseModel):
    items: list[ProductRead]
    total: int
    page: int
    page_size: int

"""Catalog rows written by the product import and name migration jobs."""

from typing import Any

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, func
from sqlalchemy.types import DateTime

from bulkops.db.base import Base

# Columns a compensating action must put back when undoing a change.
RESTORABLE_FIELDS = ("sku", "name", "description", "active", "is_deleted")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    sku = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    active = Column(Boolean, nullable=False, default=True)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # SKUs are unique regardless of case.
    __table_args__ = (Index("ix_products_sku_lower", func.lower(sku), unique=True),)

    def __repr__(self) -> str:
        return f"<Product {self.id} {self.sku}>"

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe copy of the restorable columns, keyed with the row id."""
        state = {"id": self.id}
        state.update({field: getattr(self, field) for field in RESTORABLE_FIELDS})
        return state

    def restore(self, state: dict[str, Any]) -> None:
        for field in RESTORABLE_FIELDS:
            if field in state:
                setattr(self, field, state[field])

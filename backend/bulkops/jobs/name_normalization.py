"""Data migration: collapse runs of whitespace in product names."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from bulkops.core.exceptions import InputValidationError, ItemValidationError
from bulkops.db.models.product import Product
from bulkops.jobs.base import Capability, ChunkResult, JobKind, Rollbackable
from bulkops.jobs.registry import register_kind

PAGE_SIZE = 500

# Migration identifiers this kind knows how to run.
MIGRATIONS = {
    "collapse_product_name_whitespace": "Trim names and collapse inner whitespace",
}


def normalize_name(name: str) -> str:
    return " ".join(name.split())


class ProductNameNormalization(JobKind, Rollbackable):
    name = "product_name_normalization"
    capabilities = frozenset({Capability.ROLLBACKABLE, Capability.RESUMABLE})

    def preflight(self, input_reference: str) -> None:
        if input_reference not in MIGRATIONS:
            raise InputValidationError(
                f"Unknown migration '{input_reference}' "
                f"(known: {', '.join(sorted(MIGRATIONS))})"
            )

    def _base_query(self):
        return select(Product.id, Product.name).where(Product.is_deleted.is_(False))

    def count_items(self, input_reference: str, session: Session) -> int:
        return session.execute(
            select(func.count()).select_from(Product).where(Product.is_deleted.is_(False))
        ).scalar_one()

    def iter_items(
        self, input_reference: str, session: Session, offset: int = 0
    ) -> Iterator[dict[str, Any]]:
        # Keyset pages so no cursor stays open across chunk commits.
        query = self._base_query().order_by(Product.id)
        rows = session.execute(query.offset(offset).limit(PAGE_SIZE)).all()
        while rows:
            for row in rows:
                yield {"id": row.id, "name": row.name}
            last_id = rows[-1].id
            rows = session.execute(
                query.where(Product.id > last_id).limit(PAGE_SIZE)
            ).all()

    def validate_item(self, item: dict[str, Any], position: int) -> dict[str, Any]:
        if not normalize_name(item.get("name") or ""):
            raise ItemValidationError(
                f"Product {item.get('id')} has a blank name", item=item, position=position
            )
        return item

    def apply_chunk(self, items: list[dict[str, Any]], session: Session) -> ChunkResult:
        previous = []
        for item in items:
            cleaned = normalize_name(item["name"])
            if cleaned == item["name"]:
                continue
            product = session.get(Product, item["id"])
            if product is None:
                continue
            previous.append({"id": product.id, "name": product.name})
            product.name = cleaned
        session.flush()
        compensations = []
        if previous:
            compensations.append(
                {"operation": "restore_names", "target": "products", "data": {"previous": previous}}
            )
        return ChunkResult(
            stats={"changed": len(previous), "unchanged": len(items) - len(previous)},
            compensations=compensations,
        )

    def compensate(self, descriptor: dict[str, Any], session: Session) -> None:
        for state in descriptor["data"]["previous"]:
            product = session.get(Product, state["id"])
            if product is None:
                raise LookupError(f"Product {state['id']} vanished before rollback")
            product.restore(state)
        session.flush()


register_kind(ProductNameNormalization())

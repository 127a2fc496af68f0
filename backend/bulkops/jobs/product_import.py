"""CSV product import: upsert rows by SKU in adaptive chunks."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from bulkops.core.config import get_settings
from bulkops.jobs.base import Capability, ChunkResult, JobKind, Rollbackable
from bulkops.jobs.registry import register_kind
from bulkops.services import csv_ingest
from bulkops.utils.csv_validator import REQUIRED_HEADERS, normalize_row
from bulkops.utils.input_guard import validate_import_source


class ProductImport(JobKind, Rollbackable):
    name = "product_import"
    capabilities = frozenset({Capability.ROLLBACKABLE, Capability.RESUMABLE})

    def _source(self, input_reference: str) -> Path:
        settings = get_settings()
        return validate_import_source(
            input_reference,
            allowed_root=settings.uploads_dir,
            max_bytes=settings.max_upload_bytes,
            allowed_extensions=settings.allowed_import_extensions,
            required_headers=REQUIRED_HEADERS,
        )

    def preflight(self, input_reference: str) -> None:
        self._source(input_reference)

    def count_items(self, input_reference: str, session: Session) -> int:
        return csv_ingest.count_rows(self._source(input_reference))

    def iter_items(
        self, input_reference: str, session: Session, offset: int = 0
    ) -> Iterator[dict[str, Any]]:
        return csv_ingest.iter_rows(self._source(input_reference), offset=offset)

    def validate_item(self, item: dict[str, Any], position: int) -> dict[str, Any]:
        return normalize_row(item, position=position)

    def apply_chunk(self, items: list[dict[str, Any]], session: Session) -> ChunkResult:
        stats, compensation = csv_ingest.upsert_products(items, session)
        compensations = []
        if compensation["created_ids"] or compensation["previous"]:
            compensations.append(
                {"operation": "revert_upsert", "target": "products", "data": compensation}
            )
        return ChunkResult(stats=stats, compensations=compensations)

    def compensate(self, descriptor: dict[str, Any], session: Session) -> None:
        csv_ingest.revert_products(descriptor["data"], session)


register_kind(ProductImport())

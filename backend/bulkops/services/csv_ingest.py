"""Business logic for chunked CSV ingestion."""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterator
from itertools import islice
from pathlib import Path
from typing import Any

from fastapi import UploadFile
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from bulkops.core.exceptions import FatalInputError
from bulkops.db.models.product import Product
from bulkops.storage.uploads import save_upload
from bulkops.utils.csv_validator import validate_headers

logger = logging.getLogger(__name__)


async def stage_file(upload_file: UploadFile, max_bytes: int | None = None) -> Path:
    """Persist uploaded CSV to the uploads directory and return its path."""
    try:
        await upload_file.seek(0)
        return save_upload(upload_file.file, upload_file.filename, max_bytes=max_bytes)
    except OSError as e:
        logger.error(f"OS error saving uploaded file: {e}", exc_info=True)
        raise ValueError(f"Failed to save file: {str(e)}") from e


def _open_reader(handle) -> csv.DictReader:
    reader = csv.DictReader(handle)
    if not reader.fieldnames:
        raise FatalInputError("CSV file appears to be empty or invalid")
    validate_headers(reader.fieldnames)
    reader.fieldnames = [name.strip().lower() for name in reader.fieldnames]
    return reader


def iter_rows(file_path: Path, offset: int = 0) -> Iterator[dict[str, Any]]:
    """Yield raw data rows, skipping the first ``offset`` (already processed)."""
    try:
        with file_path.open("r", encoding="utf-8", newline="") as handle:
            reader = _open_reader(handle)
            yield from islice(reader, offset, None)
    except FileNotFoundError as e:
        raise FatalInputError(f"CSV file not found: {file_path}") from e
    except PermissionError as e:
        raise FatalInputError(f"Permission denied reading file: {file_path}") from e
    except UnicodeDecodeError as e:
        raise FatalInputError(f"File encoding error: {str(e)}") from e
    except csv.Error as e:
        raise FatalInputError(f"CSV parsing error: {str(e)}") from e


def count_rows(file_path: Path) -> int:
    """Return the total number of data rows in the CSV (excluding headers)."""
    return sum(1 for _ in iter_rows(file_path))


def upsert_products(rows: list[dict], db: Session) -> tuple[dict[str, int], dict[str, Any]]:
    """Bulk upsert by case-insensitive SKU.

    Returns the insert/update counts and the compensation payload: ids of
    created rows and the pre-mutation state of updated rows.
    """
    if not rows:
        return {"inserted": 0, "updated": 0}, {"created_ids": [], "previous": []}

    # Last occurrence of a SKU within the chunk wins.
    normalized_map: dict[str, dict] = {}
    for row in rows:
        normalized_map[row["sku"].lower()] = row

    existing_products = (
        db.execute(
            select(Product).where(func.lower(Product.sku).in_(list(normalized_map.keys())))
        )
        .scalars()
        .all()
    )

    previous: list[dict[str, Any]] = []
    updated = 0
    for product in existing_products:
        payload = normalized_map.pop(product.sku.lower(), None)
        if not payload:
            continue
        previous.append(product.snapshot())
        product.name = payload["name"]
        product.description = payload.get("description")
        product.active = payload.get("active", True)
        product.is_deleted = False  # Restore if was deleted
        updated += 1

    created: list[Product] = []
    for payload in normalized_map.values():
        product = Product(
            sku=payload["sku"],
            name=payload["name"],
            description=payload.get("description"),
            active=payload.get("active", True),
            is_deleted=False,
        )
        db.add(product)
        created.append(product)

    db.flush()
    stats = {"inserted": len(created), "updated": updated}
    return stats, {"created_ids": [p.id for p in created], "previous": previous}


def revert_products(compensation: dict[str, Any], db: Session) -> None:
    """Undo one upsert: drop created rows, restore previous values."""
    created_ids = compensation.get("created_ids") or []
    if created_ids:
        for product in db.execute(
            select(Product).where(Product.id.in_(created_ids))
        ).scalars():
            db.delete(product)

    for state in compensation.get("previous") or []:
        product = db.get(Product, state["id"])
        if product is None:
            raise LookupError(f"Product {state['id']} vanished before rollback")
        product.restore(state)
    db.flush()

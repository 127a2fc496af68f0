"""Validate CSV headers and enforce field constraints."""

from __future__ import annotations

from typing import Any

from bulkops.core.exceptions import FatalInputError, ItemValidationError

REQUIRED_HEADERS = ["sku", "name", "description"]


def missing_headers(headers: list[str] | None, required: list[str] | None = None) -> list[str]:
    required = REQUIRED_HEADERS if required is None else required
    normalized = [header.strip().lower() for header in headers or []]
    return [field for field in required if field not in normalized]


def validate_headers(headers: list[str] | None, required: list[str] | None = None) -> None:
    """Ensure CSV contains the required columns before processing."""
    required = REQUIRED_HEADERS if required is None else required
    if not headers:
        raise FatalInputError(
            f"CSV requires a header row with {','.join(required)} columns"
        )
    missing = missing_headers(headers, required)
    if missing:
        raise FatalInputError(f"Missing required column(s): {', '.join(missing)}")


def normalize_row(row: dict[str, Any], position: int | None = None) -> dict[str, Any]:
    """Clean individual row (trim strings, enforce required fields)."""

    def _clean(key: str) -> str:
        value = row.get(key) or row.get(key.lower()) or row.get(key.upper())
        return value.strip() if isinstance(value, str) else ""

    sku = _clean("sku")
    name = _clean("name")
    description = _clean("description") or None

    if not sku:
        raise ItemValidationError("Row has an empty SKU", item=row, position=position)
    if not name:
        raise ItemValidationError(
            f"Row for SKU '{sku}' is missing a name", item=row, position=position
        )
    if len(sku) > 64:
        raise ItemValidationError(
            f"SKU '{sku[:16]}...' is longer than 64 characters", item=row, position=position
        )

    return {
        "sku": sku,
        "name": name[:255],
        "description": description,
        "active": True,
    }

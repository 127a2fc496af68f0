"""Pre-flight checks for file-based job inputs."""

from __future__ import annotations

import csv
import logging
import os
from pathlib import Path

from bulkops.core.exceptions import (
    FatalInputError,
    InputValidationError,
    SecurityViolationError,
)
from bulkops.utils.csv_validator import missing_headers

logger = logging.getLogger(__name__)


def _security_violation(message: str, path: str) -> SecurityViolationError:
    logger.error(f"[input-guard] security violation: {message} (path={path!r})")
    return SecurityViolationError(message)


def resolve_within_root(path: str | os.PathLike, allowed_root: str | os.PathLike) -> Path:
    """Resolve ``path`` and refuse anything that lands outside ``allowed_root``."""
    root = Path(allowed_root).resolve()
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    if not resolved.is_relative_to(root):
        raise _security_violation("Input path resolves outside the allowed root", str(path))
    return resolved


def read_header_row(path: Path) -> list[str]:
    try:
        with path.open("r", encoding="utf-8", newline="") as handle:
            reader = csv.reader(handle)
            return next(reader, [])
    except UnicodeDecodeError as e:
        raise FatalInputError(f"File encoding error: {e}") from e
    except csv.Error as e:
        raise FatalInputError(f"CSV parsing error: {e}") from e


def validate_import_source(
    path: str | os.PathLike,
    allowed_root: str | os.PathLike,
    max_bytes: int,
    allowed_extensions: list[str],
    required_headers: list[str] | None = None,
) -> Path:
    """Run every input check and return the resolved path.

    Order: containment, extension, existence, readability, size, headers.
    Traversal, type and size failures raise SecurityViolationError; the rest
    raise InputValidationError or FatalInputError (unusable content).
    """
    resolved = resolve_within_root(path, allowed_root)

    suffix = resolved.suffix.lower()
    if suffix not in allowed_extensions:
        raise _security_violation(
            f"File type '{suffix or 'none'}' is not allowed "
            f"(accepted: {', '.join(allowed_extensions)})",
            str(path),
        )

    if not resolved.is_file():
        raise InputValidationError(f"Input file not found: {resolved.name}")
    if not os.access(resolved, os.R_OK):
        raise InputValidationError(f"Input file is not readable: {resolved.name}")

    size = resolved.stat().st_size
    if size > max_bytes:
        raise _security_violation(
            f"Input file is {size} bytes, above the {max_bytes} byte limit", str(path)
        )
    if size == 0:
        raise FatalInputError("Input file is empty")

    if required_headers:
        headers = read_header_row(resolved)
        if not headers:
            raise FatalInputError("Input file has no header row")
        missing = missing_headers(headers, required_headers)
        if missing:
            raise FatalInputError(f"Missing required column(s): {', '.join(missing)}")

    return resolved

"""Local-disk staging for uploaded job inputs."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import BinaryIO

from bulkops.core.config import get_settings
from bulkops.core.exceptions import SecurityViolationError

logger = logging.getLogger(__name__)

COPY_CHUNK_BYTES = 1024 * 1024


def uploads_dir() -> Path:
    path = Path(get_settings().uploads_dir).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_upload(
    file_obj: BinaryIO, original_name: str | None = None, max_bytes: int | None = None
) -> Path:
    """Copy an upload into the uploads directory under a random name.

    The copy stops as soon as it passes ``max_bytes``; the partial file is
    removed and SecurityViolationError raised.
    """
    suffix = Path(original_name or "upload.csv").suffix.lower() or ".csv"
    target_path = uploads_dir() / f"{uuid.uuid4()}{suffix}"
    file_obj.seek(0)
    written = 0
    try:
        with target_path.open("wb") as destination:
            while True:
                chunk = file_obj.read(COPY_CHUNK_BYTES)
                if not chunk:
                    break
                written += len(chunk)
                if max_bytes is not None and written > max_bytes:
                    raise SecurityViolationError(
                        f"Upload exceeds the {max_bytes} byte limit"
                    )
                destination.write(chunk)
    except SecurityViolationError:
        logger.error(f"Rejected upload {original_name!r}: over {max_bytes} bytes")
        delete_upload(target_path)
        raise
    return target_path


def delete_upload(uri: str | Path) -> None:
    """Remove a staged file; a missing file is not an error."""
    path = Path(uri).resolve()
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not delete staged upload {path}: {e}")

"""Abstraction over object storage for original uploads (local fs implementation)."""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from catalog_ingest.core.config import get_settings
from catalog_ingest.core.errors import SourceFileUnavailableError

logger = logging.getLogger(__name__)


def _uploads_dir() -> Path:
    path = Path(get_settings().uploads_dir).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_upload(file_obj: BinaryIO, original_name: str | None = None) -> Path:
    """Persist an uploaded file and return its absolute path.

    The original is kept for operator retries, so it is never cleaned up
    by the pipeline itself.
    """
    suffix = Path(original_name or "upload.csv").suffix or ".csv"
    target_path = (_uploads_dir() / f"{uuid.uuid4()}{suffix.lower()}").resolve()
    file_obj.seek(0)
    with target_path.open("wb") as destination:
        shutil.copyfileobj(file_obj, destination)
    logger.info(f"Stored upload {original_name} at {target_path}")
    return target_path


def load_upload(uri: str | Path | None) -> bytes:
    """Read a stored original upload back for (re-)dispatch."""
    if not uri:
        raise SourceFileUnavailableError("source file no longer available")
    path = Path(uri)
    try:
        return path.read_bytes()
    except FileNotFoundError as e:
        raise SourceFileUnavailableError(f"source file no longer available: {path}") from e
    except OSError as e:
        logger.error(f"Failed to read stored upload {path}: {e}", exc_info=True)
        raise SourceFileUnavailableError(f"source file unreadable: {path}") from e


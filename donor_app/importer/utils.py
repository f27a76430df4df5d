"""
Upload storage helpers for the importer.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable
from uuid import uuid4

from flask import Flask
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from donor_app.importer.parsers import SUPPORTED_EXTENSIONS

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_SUBDIR = "import_uploads"


def resolve_upload_directory(app: Flask) -> Path:
    """
    Determine and create (if necessary) the importer upload directory.

    Relative ``IMPORTER_UPLOAD_DIR`` values resolve against the instance folder.
    """
    configured = app.config.get("IMPORTER_UPLOAD_DIR")
    if not configured:
        upload_dir = Path(app.instance_path) / DEFAULT_UPLOAD_SUBDIR
    else:
        upload_dir = Path(configured)
        if not upload_dir.is_absolute():
            upload_dir = Path(app.instance_path) / upload_dir
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def allowed_file(filename: str, allowed_extensions: Iterable[str] = SUPPORTED_EXTENSIONS) -> bool:
    if not filename or "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in {ext.lower() for ext in allowed_extensions}


def persist_upload(file_storage: FileStorage, app: Flask) -> Path:
    """
    Save an upload under a UUID-based name and return its path.

    The original extension is kept so the parser can pick the delimiter.
    """
    original_name = secure_filename(file_storage.filename or "")
    extension = Path(original_name).suffix.lower() or ".csv"
    target_path = resolve_upload_directory(app) / f"{uuid4().hex}{extension}"
    file_storage.save(target_path)
    logger.debug("Importer upload persisted to %s", target_path)
    return target_path


def cleanup_upload(path: Path) -> None:
    """Remove a stored upload; filesystem errors are logged, not raised."""
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to remove importer upload %s: %s", path, exc)


__all__ = ["resolve_upload_directory", "allowed_file", "persist_upload", "cleanup_upload"]

"""
storage.py — Local document store for participant uploads.

Documents live under the configured upload directory as
``<folder>/<owner>_<label>_<stamp>.<ext>``. The stored path is relative to
that directory and opaque to everything else.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from pathlib import Path
from typing import Iterable, Optional

from core.config import get_settings
from core.errors import NotFoundError, ValidationError

logger = logging.getLogger("racetiming.storage")

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "application/pdf": ".pdf",
}
_ALLOWED_SUFFIXES = {".jpg", ".jpeg", ".png", ".pdf"}
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


class DocumentStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    def save(self, folder: str, owner: str, label: str, filename: Optional[str],
             content_type: Optional[str], data: bytes) -> str:
        """Store one upload and return its relative path."""
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(
                f"File type {content_type or 'unknown'} not allowed, use JPG, PNG or PDF"
            )
        if not data:
            raise ValidationError(f"Uploaded file for {label} is empty")

        suffix = Path(filename or "").suffix.lower()
        if suffix not in _ALLOWED_SUFFIXES:
            suffix = ALLOWED_CONTENT_TYPES[content_type]
        stamp = f"{int(time.time() * 1000)}{secrets.token_hex(3)}"
        rel = f"{_UNSAFE.sub('_', folder)}/{_UNSAFE.sub('_', owner)}_{label}_{stamp}{suffix}"

        path = self.resolve(rel, must_exist=False)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("Stored document %s (%d bytes)", rel, len(data))
        return rel

    def resolve(self, rel: str, must_exist: bool = True) -> Path:
        """Absolute path of a stored document; refuses paths outside the store."""
        root = self.root.resolve()
        path = (root / rel).resolve()
        if root not in path.parents:
            raise NotFoundError("Document not found")
        if must_exist and not path.is_file():
            raise NotFoundError("Document not found")
        return path

    def delete_many(self, paths: Iterable[Optional[str]]) -> int:
        """Remove documents; missing ones are skipped. Returns count removed."""
        removed = 0
        for rel in paths:
            if not rel:
                continue
            try:
                self.resolve(rel).unlink()
                removed += 1
            except NotFoundError:
                logger.debug("Document already gone: %s", rel)
            except OSError as e:
                logger.warning("Could not delete document %s: %s", rel, e)
        return removed


def get_store() -> DocumentStore:
    return DocumentStore(get_settings().upload_dir)

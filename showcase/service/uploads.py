from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Sequence

from showcase.logging import get_logger
from showcase.service.errors import PayloadTooLargeError, ValidationError

logger = get_logger(__name__)

SAFE_FILENAME = re.compile(r"^[a-zA-Z0-9._-]+$")


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


@dataclass
class UploadCandidate:
    filename: str
    content_type: str
    size: int


def check_filename(filename: str) -> None:
    if not filename or not SAFE_FILENAME.match(filename):
        raise ValidationError(
            "Invalid filename. Only alphanumeric characters, dots, hyphens, and underscores are allowed.",
            detail={"filename": filename},
        )
    if filename.count(".") > 1:
        raise ValidationError(
            "Invalid filename. Multiple extensions are not allowed.",
            detail={"filename": filename},
        )
    if filename.count(".") == 0 or filename.startswith(".") or filename.endswith("."):
        raise ValidationError(
            "Invalid filename. A file extension is required.",
            detail={"filename": filename},
        )


def validate_uploads(
    files: Sequence[UploadCandidate],
    *,
    max_files: int,
    max_bytes: int,
    allowed_types: Iterable[str],
) -> None:
    if not files:
        raise ValidationError("No files uploaded")
    if len(files) > max_files:
        raise ValidationError(
            f"Too many files. Maximum {max_files} files per request.",
            detail={"maxFiles": max_files},
        )
    allowed = set(allowed_types)
    for item in files:
        if item.size > max_bytes:
            raise PayloadTooLargeError(
                f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.",
                detail={"filename": item.filename, "maxBytes": max_bytes},
            )
        if item.content_type not in allowed:
            raise ValidationError(
                "Invalid file type. Only JPEG, PNG, GIF, and WebP images are allowed.",
                detail={"filename": item.filename, "contentType": item.content_type},
            )
        check_filename(item.filename)


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base``; the result must resolve inside ``base``."""

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def stored_name(filename: str) -> str:
    """Unique on-disk name keeping the original extension."""
    suffix = Path(filename).suffix.lower()
    return f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{suffix}"


def save_uploads(upload_dir: Path, files: Sequence[tuple[str, bytes]]) -> List[dict]:
    upload_dir.mkdir(parents=True, exist_ok=True)
    saved = []
    for original, data in files:
        name = stored_name(original)
        target = safe_join(upload_dir, name)
        target.write_bytes(data)
        saved.append({"originalName": original, "filename": name, "size": len(data)})
    logger.info("uploads_saved", count=len(saved), upload_dir=str(upload_dir))
    return saved

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from asphaltworks.logging import get_logger
from asphaltworks.service.errors import NotFoundError, ValidationError
from asphaltworks.service.fs import PathTraversalError, media_file

logger = get_logger(__name__)

ALLOWED_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "application/pdf": ".pdf",
}


@dataclass
class StoredUpload:
    filename: str
    url: str
    size: int
    content_type: str


class UploadService:
    """Stores admin uploads under ``<media_root>/uploads`` with random names."""

    def __init__(self, media_root: Path, *, max_bytes: int, url_prefix: str = "/media/uploads") -> None:
        self.directory = Path(media_root) / "uploads"
        self.max_bytes = max(1, max_bytes)
        self.url_prefix = url_prefix.rstrip("/")

    def save(self, contents: bytes, *, content_type: Optional[str], original_name: Optional[str]) -> StoredUpload:
        if content_type not in ALLOWED_TYPES:
            raise ValidationError(
                "file type not allowed",
                detail={"field": "file", "allowed": sorted(ALLOWED_TYPES)},
            )
        if len(contents) > self.max_bytes:
            raise ValidationError(
                "file too large", detail={"field": "file", "max_bytes": self.max_bytes}
            )
        if not contents:
            raise ValidationError("file is empty", detail={"field": "file"})
        filename = f"{uuid.uuid4().hex}{ALLOWED_TYPES[content_type]}"
        self.directory.mkdir(parents=True, exist_ok=True)
        dest = media_file(self.directory, filename)
        dest.write_bytes(contents)
        logger.info(
            "upload_stored",
            filename=filename,
            original_name=original_name,
            size=len(contents),
            content_type=content_type,
        )
        return StoredUpload(
            filename=filename,
            url=f"{self.url_prefix}/{filename}",
            size=len(contents),
            content_type=content_type,
        )

    def delete(self, filename: str) -> None:
        try:
            target = media_file(self.directory, filename)
        except PathTraversalError as exc:
            logger.warning("upload_delete_traversal", filename=filename)
            raise ValidationError("invalid file name", detail={"field": "filename"}) from exc
        if not target.is_file():
            raise NotFoundError("file not found", detail={"filename": filename})
        target.unlink()
        logger.info("upload_deleted", filename=filename)

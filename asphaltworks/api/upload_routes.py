from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, File, UploadFile

from asphaltworks.api.dependencies import get_staff_user
from asphaltworks.api.routes import ok
from asphaltworks.api.schemas import Envelope, UploadResponse
from asphaltworks.service.errors import ValidationError
from asphaltworks.service.runtime import get_runtime
from asphaltworks.storage.models import User

router = APIRouter(prefix="/api/upload", tags=["uploads"])


@router.post("", response_model=Envelope, status_code=201)
async def upload_file(file: UploadFile = File(...), actor: User = Depends(get_staff_user)):
    """Store one image or PDF and return its public URL."""
    runtime = get_runtime()
    max_bytes = runtime.uploads.max_bytes
    # one byte past the cap is enough to tell the file is oversized
    contents = await file.read(max_bytes + 1)
    if len(contents) > max_bytes:
        raise ValidationError(
            "file too large", detail={"field": "file", "max_bytes": max_bytes}
        )
    stored = await asyncio.to_thread(
        runtime.uploads.save,
        contents,
        content_type=file.content_type,
        original_name=file.filename,
    )
    return ok(
        UploadResponse(
            filename=stored.filename,
            url=stored.url,
            size=stored.size,
            content_type=stored.content_type,
        ),
        "file uploaded",
    )


@router.delete("/{filename}", response_model=Envelope)
async def delete_file(filename: str, actor: User = Depends(get_staff_user)):
    runtime = get_runtime()
    runtime.uploads.delete(filename)
    return ok(message="file deleted")

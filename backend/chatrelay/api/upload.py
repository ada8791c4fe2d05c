"""Upload intake: validate a media file and return it as a self-contained data URL."""

from __future__ import annotations

import base64
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile

from chatrelay.config import Settings, get_settings
from chatrelay.errors import ApiError
from chatrelay.models.chat import ErrorBody, UploadResult

logger = logging.getLogger(__name__)
router = APIRouter()

ALLOWED_MIME_PREFIXES = ("image/", "video/")


def is_allowed_mime(mime: Optional[str]) -> bool:
    return bool(mime) and mime.startswith(ALLOWED_MIME_PREFIXES)


def to_data_url(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


@router.post("", response_model=UploadResult, responses={400: {"model": ErrorBody}})
async def upload(
    file: Optional[UploadFile] = File(None),
    settings: Settings = Depends(get_settings),
) -> UploadResult:
    """Accept one image or video of at most ``max_upload_bytes``."""
    if file is None:
        raise ApiError(400, "No file provided")

    mime = file.content_type or ""
    if not is_allowed_mime(mime):
        raise ApiError(400, "Only image or video files are supported")

    limit = settings.max_upload_bytes
    # Read one byte past the limit so oversize files are detected without buffering them fully.
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise ApiError(400, f"File exceeds the {limit // (1024 * 1024)}MB limit")

    data_url = to_data_url(mime, data)
    logger.info("Accepted upload %s (%s, %d bytes)", file.filename, mime, len(data))
    return UploadResult(
        url=data_url,
        thumb_url=data_url,
        mime=mime,
        size=len(data),
        name=file.filename or "upload",
    )

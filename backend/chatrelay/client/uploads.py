"""Client side of upload intake."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from chatrelay.client.stream import error_message
from chatrelay.models.conversation import Attachment, AttachmentKind

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class UploadError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class PendingFile:
    """A file picked for the next turn, not yet uploaded."""

    name: str
    data: bytes
    mime: str

    @property
    def kind(self) -> AttachmentKind:
        return AttachmentKind.IMAGE if self.mime.startswith("image/") else AttachmentKind.VIDEO


def check_pending_file(pending: PendingFile, max_bytes: int = MAX_UPLOAD_BYTES) -> None:
    """Reject files the server would refuse, before any network call."""
    if not pending.mime.startswith(("image/", "video/")):
        raise UploadError("Only image or video files are supported")
    if len(pending.data) > max_bytes:
        raise UploadError(f"File must be smaller than {max_bytes // (1024 * 1024)}MB")


async def upload_file(
    client: httpx.AsyncClient, pending: PendingFile, path: str = "/api/upload"
) -> Attachment:
    """Upload one file and return the attachment describing it."""
    check_pending_file(pending)
    response = await client.post(
        path, files={"file": (pending.name, pending.data, pending.mime)}
    )
    if not response.is_success:
        raise UploadError(error_message(response) or "Upload failed")

    body = response.json()
    return Attachment(
        type=pending.kind,
        url=body["url"],
        mime=body.get("mime") or pending.mime,
        size=body.get("size") if body.get("size") is not None else len(pending.data),
        name=body.get("name") or pending.name,
    )

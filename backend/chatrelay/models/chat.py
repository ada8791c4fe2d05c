"""Request and response models for the chat and upload endpoints."""

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr

from chatrelay.models.conversation import MessageRole

# bool is a subclass of int; keep it out of numeric fields
Number = Union[StrictInt, StrictFloat]


class ChatTurn(BaseModel):
    """One entry of the ``messages`` history sent to the gateway."""

    model_config = ConfigDict(extra="allow")

    role: MessageRole
    content: StrictStr


class AttachmentMeta(BaseModel):
    """Attachment descriptor accepted by the gateway."""

    model_config = ConfigDict(extra="allow")

    type: Literal["image", "video"]
    url: Optional[StrictStr] = None
    mime: Optional[StrictStr] = None
    size: Optional[Number] = None
    name: Optional[StrictStr] = None


class ErrorDetail(BaseModel):
    message: str


class ErrorBody(BaseModel):
    error: ErrorDetail


class UploadResult(BaseModel):
    """Response of the upload endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    thumb_url: str = Field(alias="thumbUrl")
    mime: str
    size: int
    name: str

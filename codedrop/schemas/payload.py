"""Typed payloads carried over the peer data channel."""
from __future__ import annotations

import base64
import enum
import mimetypes
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_serializer, field_validator


class PayloadType(str, enum.Enum):
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"


class DataPayload(BaseModel):
    """One message on the data channel; file bytes travel base64-encoded in JSON."""

    model_config = ConfigDict(populate_by_name=True)

    type: PayloadType
    content: str | bytes
    filename: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")
    size: int | None = Field(default=None, ge=0)

    @field_validator("content", mode="before")
    @classmethod
    def _decode_content(cls, value: object, info: ValidationInfo) -> object:
        if isinstance(value, str) and info.data.get("type") in (PayloadType.FILE, PayloadType.IMAGE):
            return base64.b64decode(value)
        return value

    @field_serializer("content")
    def _encode_content(self, value: str | bytes) -> str:
        if isinstance(value, bytes):
            return base64.b64encode(value).decode("ascii")
        return value

    @classmethod
    def text(cls, text: str) -> "DataPayload":
        return cls(type=PayloadType.TEXT, content=text)

    @classmethod
    def file(cls, filename: str, data: bytes, mime_type: str | None = None) -> "DataPayload":
        mime_type = mime_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        kind = PayloadType.IMAGE if mime_type.startswith("image/") else PayloadType.FILE
        return cls(type=kind, content=data, filename=filename, mime_type=mime_type, size=len(data))

    @classmethod
    def from_path(cls, path: str | Path) -> "DataPayload":
        file_path = Path(path)
        return cls.file(file_path.name, file_path.read_bytes())

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "DataPayload":
        return cls.model_validate_json(raw)

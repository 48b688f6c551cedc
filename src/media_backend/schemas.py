from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from media_backend.config import Settings
from media_backend.domain.attachment import AttachmentData


class ErrorResponse(BaseModel):
    """Pinned error contract shared by every endpoint."""

    error: str
    message: str
    request_id: str | None = None
    details: object | None = None


class PreviewOut(BaseModel):
    w: int | None = None
    h: int | None = None
    ext: str
    url: str


class AttachmentOut(BaseModel):
    id: str = Field(min_length=1, max_length=36)
    post_id: str | None = None
    media_type: str
    mime_type: str
    file_name: str
    file_size: int
    file_extension: str
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    in_progress: bool
    sanitized: int
    meta: dict[str, Any] = Field(default_factory=dict)
    url: str
    previews: dict[str, dict[str, PreviewOut]] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_data(cls, data: AttachmentData, cfg: Settings) -> AttachmentOut:
        def _url(variant: str, ext: str | None = None) -> str:
            return data.file_url(
                variant, ext, prefix=cfg.attachments_path, base_url=cfg.attachments_url
            )

        previews = {
            kind: {
                variant: PreviewOut(
                    w=props.get("w"),
                    h=props.get("h"),
                    ext=str(props.get("ext") or ""),
                    url=_url(variant, str(props.get("ext") or "")),
                )
                for variant, props in variants.items()
            }
            for kind, variants in data.previews.items()
        }
        return cls(
            id=data.id,
            post_id=data.post_id,
            media_type=data.media_type,
            mime_type=data.mime_type,
            file_name=data.file_name,
            file_size=data.file_size,
            file_extension=data.file_extension,
            width=data.width,
            height=data.height,
            duration=data.duration,
            in_progress=data.is_in_progress,
            sanitized=data.sanitized,
            meta=dict(data.meta),
            url=_url("", data.file_extension),
            previews=previews,
            created_at=data.created_at,
            updated_at=data.updated_at,
        )


class AttachmentListOut(BaseModel):
    items: list[AttachmentOut]
    limit: int
    offset: int


class SanitizeResult(BaseModel):
    updated: bool
    sanitized: int


class AttachmentsStats(BaseModel):
    total: int
    sanitized: int

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

MediaType = Literal["image", "audio", "video", "general"]

# {variant: {"w": int, "h": int, "ext": str}} or {variant: {"ext": str}}
Previews = dict[str, dict[str, Any]]


@dataclass(frozen=True)
class Box:
    width: int
    height: int


@dataclass(frozen=True)
class SizedVariant:
    variant: str
    width: int
    height: int


@dataclass(frozen=True)
class StagedFile:
    path: Path
    ext: str


@dataclass
class MediaInfo:
    """Result of probing a file: what it really is."""

    type: MediaType
    mime_type: str
    extension: str
    format: str = ""
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    v_codec: str | None = None
    a_codec: str | None = None
    is_animated_image: bool = False
    is_vector: bool = False
    tags: dict[str, Any] = field(default_factory=dict)


@dataclass
class MediaProcessResult:
    """Data (almost) ready to be stored as an attachment record.

    ``files`` maps variant names to staged local files; ``""`` is the
    original. A deferred result also carries the raw upload at ``"original"``.
    """

    media_type: MediaType
    mime_type: str
    file_name: str
    file_size: int
    file_extension: str
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    previews: dict[str, Previews] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    files: dict[str, StagedFile] = field(default_factory=dict)

    @property
    def in_progress(self) -> bool:
        return bool(self.meta.get("inProgress"))

    def record_fields(self) -> dict[str, Any]:
        return {
            "media_type": self.media_type,
            "mime_type": self.mime_type,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "file_extension": self.file_extension,
            "width": self.width,
            "height": self.height,
            "duration": self.duration,
            "previews": self.previews,
            "meta": self.meta,
        }

"""Read model of an attachment record.

``load_attachment`` is the only place that knows about the legacy record
shape (``image_sizes``, ``title``, ``artist`` columns, no ``previews``); it
migrates such rows on read so that the rest of the code sees one shape.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from media_backend.integrations.storage.object_storage import build_attachment_storage_key
from media_backend.models import Attachment

# Legacy image_sizes keys -> preview variants
_LEGACY_IMAGE_VARIANTS = {"o": "", "t": "thumbnails", "t2": "thumbnails2"}


@dataclass(frozen=True)
class FileVariant:
    variant: str
    ext: str


@dataclass(frozen=True)
class AttachmentData:
    id: str
    user_id: int
    post_id: str | None
    media_type: str
    mime_type: str
    file_extension: str
    file_name: str
    file_size: int
    width: int | None
    height: int | None
    duration: float | None
    previews: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    sanitized: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_in_progress(self) -> bool:
        return bool(self.meta.get("inProgress"))

    def all_file_variants(self, *, include_original: bool = True) -> list[FileVariant]:
        """Every stored file: the previews of all kinds plus the original."""
        seen: set[FileVariant] = set()
        result: list[FileVariant] = []
        for variants in self.previews.values():
            for variant, props in variants.items():
                if variant == "" and not include_original:
                    continue
                fv = FileVariant(variant=variant, ext=str(props.get("ext") or ""))
                if fv not in seen:
                    seen.add(fv)
                    result.append(fv)
        if include_original and not any(fv.variant == "" for fv in result):
            result.append(FileVariant(variant="", ext=self.file_extension))
        return result

    def variant_ext(self, variant: str) -> str:
        for fv in self.all_file_variants():
            if fv.variant == variant:
                return fv.ext
        return "unknown"

    def rel_file_path(self, variant: str = "", ext: str | None = None, *, prefix: str) -> str:
        if ext is None:
            ext = self.variant_ext(variant)
        return build_attachment_storage_key(prefix, self.id, variant, ext)

    def file_url(
        self, variant: str = "", ext: str | None = None, *, prefix: str, base_url: str
    ) -> str:
        return base_url + self.rel_file_path(variant, ext, prefix=prefix)

    def max_sized_variant(self, kind: str) -> str | None:
        max_w = 0
        max_variant: str | None = None
        for variant, props in (self.previews.get(kind) or {}).items():
            w = int(props.get("w") or 0)
            if w > max_w:
                max_w = w
                max_variant = variant
        return max_variant


def _ext_from_url(url: str) -> str:
    suffix = PurePosixPath(urlparse(url or "").path).suffix
    return suffix[1:].lower()


def _legacy_previews(row: Attachment) -> dict[str, dict[str, dict[str, Any]]]:
    if row.media_type == "image" and row.image_sizes:
        image: dict[str, dict[str, Any]] = {}
        for legacy_key, variant in _LEGACY_IMAGE_VARIANTS.items():
            size = row.image_sizes.get(legacy_key)
            if not size:
                continue
            image[variant] = {
                "w": size.get("w"),
                "h": size.get("h"),
                "ext": _ext_from_url(size.get("url", "")) or row.file_extension,
            }
        return {"image": image} if image else {}
    if row.media_type == "audio":
        return {"audio": {"": {"ext": row.file_extension}}}
    return {}


def load_attachment(row: Attachment) -> AttachmentData:
    previews = copy.deepcopy(row.previews) if row.previews is not None else _legacy_previews(row)
    meta = copy.deepcopy(row.meta) if row.meta else {}
    if row.title and "dc:title" not in meta:
        meta["dc:title"] = row.title
    if row.artist and "dc:creator" not in meta:
        meta["dc:creator"] = row.artist

    width, height = row.width, row.height
    if width is None and row.image_sizes and row.image_sizes.get("o"):
        orig = row.image_sizes["o"]
        width, height = orig.get("w"), orig.get("h")

    return AttachmentData(
        id=row.id,
        user_id=row.user_id,
        post_id=row.post_id,
        media_type=row.media_type,
        mime_type=row.mime_type,
        file_extension=row.file_extension,
        file_name=row.file_name,
        file_size=row.file_size,
        width=width,
        height=height,
        duration=row.duration,
        previews=previews,
        meta=meta,
        sanitized=row.sanitized,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )

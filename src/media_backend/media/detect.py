"""Content sniffing and media probing.

``sniff_mime_type`` decides what a file really is from its bytes, never from
the client's Content-Type. ``MediaDetector.detect`` then probes the file with
Pillow (images) or ffprobe (audio/video) to fill in the media info; any probe
failure degrades the file to the ``general`` media type.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import filetype
from PIL import Image, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from media_backend.errors import TransientToolError
from media_backend.media.file_ext import (
    OCTET_STREAM,
    file_extension_for,
    general_file_extension,
    mime_type_for_file_name,
)
from media_backend.media.types import MediaInfo
from media_backend.spawn import run_tool

logger = logging.getLogger(__name__)

VECTOR_MIME_TYPES = frozenset({"image/svg+xml"})


def _signature_mime_type(file_path: Path) -> str | None:
    try:
        kind = filetype.guess(str(file_path))
    except (OSError, TypeError):
        return None
    if kind is None or kind.mime == OCTET_STREAM:
        return None
    return kind.mime


def _legacy_magic_mime_type(file_path: Path) -> str | None:
    # libmagic is a system library; without it this step is skipped.
    try:
        import magic

        description = magic.from_file(str(file_path))
    except (ImportError, OSError) as exc:
        logger.debug("legacy magic detection unavailable for %s: %s", file_path, exc)
        return None
    except Exception as exc:  # magic.MagicException
        logger.debug("legacy magic detection failed for %s: %s", file_path, exc)
        return None

    if "ID3" in (description or ""):
        return "audio/mpeg"
    return None


def sniff_mime_type(file_path: str | Path, declared_file_name: str) -> str:
    """Detect the MIME type of a file. Never raises."""
    path = Path(file_path)
    return (
        _signature_mime_type(path)
        or _legacy_magic_mime_type(path)
        or mime_type_for_file_name(declared_file_name)
        or OCTET_STREAM
    )


def _identify_image(file_path: Path) -> dict[str, Any]:
    with Image.open(file_path) as img:
        width, height = img.size
        orientation = img.getexif().get(0x0112, 1)
        # EXIF orientations 5..8 swap the axes.
        if orientation in (5, 6, 7, 8):
            width, height = height, width
        return {
            "format": (img.format or "").lower(),
            "width": width,
            "height": height,
            "n_frames": int(getattr(img, "n_frames", 1) or 1),
        }


class MediaDetector:
    def __init__(self, *, tool_timeout: float) -> None:
        self._tool_timeout = tool_timeout

    async def ffprobe(self, file_path: Path) -> dict[str, Any]:
        out = await run_tool(
            "ffprobe",
            [
                "-hide_banner",
                ["-loglevel", "warning"],
                "-show_format",
                "-show_streams",
                ["-print_format", "json"],
                ["-i", str(file_path)],
            ],
            timeout=self._tool_timeout,
        )
        return json.loads(out.stdout)

    async def detect(self, file_path: str | Path, declared_file_name: str) -> MediaInfo:
        path = Path(file_path)
        mime_type = sniff_mime_type(path, declared_file_name)
        general = MediaInfo(
            type="general",
            mime_type=mime_type,
            extension=general_file_extension(mime_type, declared_file_name),
        )

        if mime_type in VECTOR_MIME_TYPES:
            return MediaInfo(
                type="image",
                mime_type=mime_type,
                format="svg",
                extension=file_extension_for("image", "svg", declared_file_name),
                is_vector=True,
            )

        if mime_type.startswith("image/"):
            try:
                return await self._detect_image(path, mime_type, declared_file_name)
            except (OSError, UnidentifiedImageError, ValueError, Image.DecompressionBombError):
                logger.info("cannot identify image %s, treating as general file", path)
                return general

        if mime_type.startswith(("audio/", "video/")) or mime_type == OCTET_STREAM:
            try:
                info = await self._detect_playable(path, mime_type, declared_file_name)
            except (TransientToolError, ValueError, KeyError) as exc:
                logger.info("cannot probe %s (%s), treating as general file", path, exc)
                return general
            if info is not None:
                return info

        return general

    async def _detect_image(self, path: Path, mime_type: str, file_name: str) -> MediaInfo:
        data = await run_in_threadpool(_identify_image, path)
        fmt = data["format"]

        if data["n_frames"] > 1 and fmt in ("gif", "webp", "png"):
            animated = await self._detect_animated_image(path, mime_type, fmt, file_name)
            if animated is not None:
                return animated

        return MediaInfo(
            type="image",
            mime_type=mime_type,
            format=fmt,
            extension=file_extension_for("image", fmt, file_name),
            width=data["width"],
            height=data["height"],
        )

    async def _detect_animated_image(
        self, path: Path, mime_type: str, fmt: str, file_name: str
    ) -> MediaInfo | None:
        try:
            probe = await self.ffprobe(path)
        except (TransientToolError, ValueError) as exc:
            logger.info("cannot probe animated image %s: %s", path, exc)
            return None

        fmt_info = probe.get("format") or {}
        video = _first_stream(probe, "video")
        duration = fmt_info.get("duration")
        if video is None or not duration:
            return None

        return MediaInfo(
            type="video",
            mime_type=mime_type,
            format=fmt,
            extension=file_extension_for("image", fmt, file_name),
            width=int(video["width"]),
            height=int(video["height"]),
            duration=float(duration),
            v_codec=video.get("codec_name"),
            is_animated_image=True,
        )

    async def _detect_playable(
        self, path: Path, sniffed_mime: str, file_name: str
    ) -> MediaInfo | None:
        probe = await self.ffprobe(path)
        fmt_info = probe.get("format") or {}
        fmt = str(fmt_info.get("format_name") or "").split(",")[0].lower()
        duration = fmt_info.get("duration")
        tags = dict(fmt_info.get("tags") or {})

        video = _first_stream(probe, "video", skip_attached_pictures=True)
        audio = _first_stream(probe, "audio")

        if video is not None and duration:
            ext = file_extension_for("video", fmt, file_name)
            return MediaInfo(
                type="video",
                mime_type=_playable_mime("video", sniffed_mime, ext),
                format=fmt,
                extension=ext,
                width=int(video["width"]),
                height=int(video["height"]),
                duration=float(duration),
                v_codec=video.get("codec_name"),
                a_codec=audio.get("codec_name") if audio else None,
                tags=tags,
            )

        if audio is not None and duration:
            ext = file_extension_for("audio", fmt, file_name)
            return MediaInfo(
                type="audio",
                mime_type=_playable_mime("audio", sniffed_mime, ext),
                format=fmt,
                extension=ext,
                duration=float(duration),
                a_codec=audio.get("codec_name"),
                tags=tags,
            )

        return None


def _first_stream(
    probe: dict[str, Any], codec_type: str, *, skip_attached_pictures: bool = False
) -> dict[str, Any] | None:
    for stream in probe.get("streams") or []:
        if stream.get("codec_type") != codec_type:
            continue
        if skip_attached_pictures and (stream.get("disposition") or {}).get("attached_pic"):
            # Cover art of audio files
            continue
        return stream
    return None


def _playable_mime(media_type: str, sniffed_mime: str, ext: str) -> str:
    if sniffed_mime.startswith(f"{media_type}/"):
        return sniffed_mime
    mime = mime_type_for_file_name(f"file.{ext}") if ext else None
    if mime and mime.startswith(f"{media_type}/"):
        return mime
    return f"{media_type}/{ext}" if ext else OCTET_STREAM

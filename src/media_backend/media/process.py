"""Derivative (preview) generation.

``MediaProcessor.process`` takes an uploaded file, detects what it is and
returns the data for the attachment record together with the staged files
to place into storage:

1. Detect the media type (``detect.MediaDetector``).
2. Generate previews, or stub out the file when a video has to be transcoded
   in the background.
3. Return a ``MediaProcessResult``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from PIL import Image, ImageOps
from starlette.concurrency import run_in_threadpool

from media_backend.config import Settings
from media_backend.errors import ContentTooLargeError
from media_backend.fs_utils import tmp_file_variant, unlink_if_exists
from media_backend.media.detect import MediaDetector
from media_backend.media.file_ext import mime_type_for_extension
from media_backend.media.geometry import get_image_preview_sizes, get_video_preview_sizes
from media_backend.media.types import (
    Box,
    MediaInfo,
    MediaProcessResult,
    Previews,
    SizedVariant,
    StagedFile,
)
from media_backend.spawn import run_tool

logger = logging.getLogger(__name__)

STUB_CONTENT = b"This file is being processed."
POSTER_VARIANT = "poster"
PREVIEW_IMAGE_EXT = "webp"
PREVIEW_VIDEO_EXT = "mp4"

_EXIF_ORIENTATION = 0x0112


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _rewrite_upright(img: Image.Image, src: Path, fmt: str) -> None:
    # img is already transposed and its EXIF has no orientation tag.
    tmp_path = src.with_name(f"{src.name}.upright")
    params: dict[str, Any] = {"exif": img.getexif()}
    if fmt == "JPEG":
        params["quality"] = 95
    if img.info.get("icc_profile"):
        params["icc_profile"] = img.info["icc_profile"]
    try:
        img.save(tmp_path, format=fmt, **params)
        os.replace(tmp_path, src)
    except (OSError, ValueError, KeyError):
        unlink_if_exists(tmp_path)
        logger.warning("cannot normalize orientation of %s", src, exc_info=True)


def _render_image_variants(
    src: Path,
    variants: list[SizedVariant],
    *,
    quality: int,
    normalize_original: bool,
) -> dict[str, Path]:
    """Render WebP previews of the first frame of ``src``.

    When ``normalize_original`` is set, an original carrying an EXIF rotation
    is rewritten upright so that consumers never have to apply it.
    """
    out: dict[str, Path] = {}
    with Image.open(src) as img:
        img.seek(0)
        fmt = img.format or ""
        orientation = img.getexif().get(_EXIF_ORIENTATION, 1)
        frame = ImageOps.exif_transpose(img)
        if frame is None:
            frame = img.copy()

        if normalize_original and orientation not in (None, 1) and fmt:
            _rewrite_upright(frame, src, fmt)

        if not variants:
            return out

        icc_profile = img.info.get("icc_profile")
        base = frame.convert("RGBA" if _has_alpha(frame) else "RGB")
        try:
            for v in variants:
                dest = tmp_file_variant(src, v.variant, PREVIEW_IMAGE_EXT)
                resized = base.resize((v.width, v.height), Image.Resampling.LANCZOS)
                save_params: dict[str, Any] = {"quality": quality}
                if icc_profile:
                    save_params["icc_profile"] = icc_profile
                resized.save(dest, "WEBP", **save_params)
                out[v.variant] = dest
        except BaseException:
            for path in out.values():
                unlink_if_exists(path)
            raise
    return out


def _first_tag(tags: Mapping[str, Any], name: str) -> str | None:
    for key, value in tags.items():
        if key.lower() != name:
            continue
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if value is None:
            return None
        value = str(value).strip()
        return value or None
    return None


class MediaProcessor:
    def __init__(
        self,
        *,
        image_preview_sizes: Mapping[str, tuple[int, int]],
        video_preview_short_sides: Mapping[str, int],
        size_limits: Mapping[str, int],
        image_preview_quality: int = 75,
        tool_timeout: float = 600.0,
        detector: MediaDetector | None = None,
    ) -> None:
        self.image_preview_sizes = dict(image_preview_sizes)
        self.video_preview_short_sides = dict(video_preview_short_sides)
        self.size_limits = dict(size_limits)
        self.image_preview_quality = image_preview_quality
        self.tool_timeout = tool_timeout
        self.detector = detector or MediaDetector(tool_timeout=tool_timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> MediaProcessor:
        return cls(
            image_preview_sizes=settings.image_preview_sizes,
            video_preview_short_sides=settings.video_preview_short_sides,
            size_limits=settings.attachments_size_limit_by_type,
            image_preview_quality=settings.image_preview_quality,
            tool_timeout=settings.media_tool_timeout_seconds,
        )

    def _check_size(self, media_type: str, file_size: int) -> None:
        limit = self.size_limits.get(media_type, self.size_limits.get("default"))
        if limit is not None and file_size > limit:
            raise ContentTooLargeError(
                f"This '{media_type}' file is too large (the maximum size is {limit} bytes)"
            )

    async def process(
        self,
        file_path: str | Path,
        file_name: str,
        *,
        synchronous: bool = False,
    ) -> MediaProcessResult:
        """Process an uploaded file.

        With ``synchronous=False`` a real video is not transcoded: the result
        is a stub (``meta.inProgress``) to be finalized by a background job.
        """
        path = Path(file_path)
        info = await self.detector.detect(path, file_name)
        self._check_size(info.type, path.stat().st_size)

        meta: dict[str, Any] = {}
        if info.type in ("audio", "video"):
            title = _first_tag(info.tags, "title")
            artist = _first_tag(info.tags, "artist")
            if title:
                meta["dc:title"] = title
            if artist:
                meta["dc:creator"] = artist

        if info.type == "image":
            return await self._process_image_file(info, path, file_name)
        if info.type == "audio":
            return self._result(
                info,
                path,
                file_name,
                media_type="audio",
                duration=info.duration,
                previews={"audio": {"": {"ext": info.extension}}},
                meta=meta,
                files={"": StagedFile(path=path, ext=info.extension)},
            )
        if info.type == "video":
            return await self._process_video_file(info, path, file_name, meta, synchronous)

        return self._result(
            info,
            path,
            file_name,
            media_type="general",
            files={"": StagedFile(path=path, ext=info.extension)},
        )

    def _result(
        self,
        info: MediaInfo,
        path: Path,
        file_name: str,
        **fields: Any,
    ) -> MediaProcessResult:
        fields.setdefault("mime_type", info.mime_type)
        fields.setdefault("file_extension", info.extension)
        fields.setdefault("file_size", path.stat().st_size)
        return MediaProcessResult(file_name=file_name, **fields)

    # Images

    async def _process_image_file(
        self, info: MediaInfo, path: Path, file_name: str
    ) -> MediaProcessResult:
        if info.is_vector:
            # Vector images are served as is.
            return self._result(
                info,
                path,
                file_name,
                media_type="image",
                previews={"image": {"": {"ext": info.extension}}},
                files={"": StagedFile(path=path, ext=info.extension)},
            )

        previews, files = await self.process_image(info, path)
        return self._result(
            info,
            path,
            file_name,
            media_type="image",
            width=info.width,
            height=info.height,
            previews={"image": previews},
            files=files,
        )

    async def process_image(
        self,
        info: MediaInfo,
        path: Path,
        *,
        is_video_still: bool = False,
    ) -> tuple[Previews, dict[str, StagedFile]]:
        assert info.width is not None and info.height is not None
        sizes = get_image_preview_sizes(
            Box(width=info.width, height=info.height), self.image_preview_sizes
        )
        rendered = await run_in_threadpool(
            _render_image_variants,
            path,
            sizes,
            quality=self.image_preview_quality,
            normalize_original=not is_video_still,
        )

        previews: Previews = {}
        files: dict[str, StagedFile] = {}
        # A video still is stored as the poster; an image original is the "" variant.
        own_variant = POSTER_VARIANT if is_video_still else ""
        own_ext = PREVIEW_IMAGE_EXT if is_video_still else info.extension
        previews[own_variant] = {"w": info.width, "h": info.height, "ext": own_ext}
        files[own_variant] = StagedFile(path=path, ext=own_ext)

        for v in sizes:
            previews[v.variant] = {"w": v.width, "h": v.height, "ext": PREVIEW_IMAGE_EXT}
            files[v.variant] = StagedFile(path=rendered[v.variant], ext=PREVIEW_IMAGE_EXT)

        return previews, files

    # Videos

    async def _process_video_file(
        self,
        info: MediaInfo,
        path: Path,
        file_name: str,
        meta: dict[str, Any],
        synchronous: bool,
    ) -> MediaProcessResult:
        assert info.width is not None and info.height is not None
        if info.is_animated_image:
            meta["animatedImage"] = True
            meta["silent"] = True
        if not info.a_codec:
            meta["silent"] = True

        if not info.is_animated_image and not synchronous:
            # Truly video: stub it out and let a background job transcode it.
            stub_path = tmp_file_variant(path, "", "tmp")
            stub_path.write_bytes(STUB_CONTENT)
            meta["inProgress"] = True
            max_size = get_video_preview_sizes(
                Box(width=info.width, height=info.height), self.video_preview_short_sides
            )[0]
            return MediaProcessResult(
                media_type="video",
                mime_type="text/plain",
                file_name=file_name,
                file_size=stub_path.stat().st_size,
                file_extension="tmp",
                width=max_size.width,
                height=max_size.height,
                duration=info.duration,
                previews={},
                meta=meta,
                files={
                    "": StagedFile(path=stub_path, ext="tmp"),
                    "original": StagedFile(path=path, ext=info.extension),
                },
            )

        previews, files = await self.process_video(info, path)

        width, height = info.width, info.height
        orig_preview = previews["video"].get("")
        if orig_preview is not None:
            width, height = orig_preview["w"], orig_preview["h"]

        orig_file = files[""]
        return MediaProcessResult(
            media_type="video",
            mime_type=(
                info.mime_type
                if info.is_animated_image
                else mime_type_for_extension(orig_file.ext)
            ),
            file_name=file_name,
            file_size=orig_file.path.stat().st_size,
            file_extension=orig_file.ext,
            width=width,
            height=height,
            duration=info.duration,
            previews=previews,
            meta=meta,
            files=files,
        )

    def _ffmpeg_args(
        self,
        info: MediaInfo,
        path: Path,
        sizes: list[SizedVariant],
        still_file: Path,
    ) -> list[str | list[str]]:
        assert info.width is not None and info.height is not None and info.duration is not None
        max_size = sizes[0]
        still_offset = 0.0 if info.is_animated_image else info.duration / 2

        if not info.a_codec:
            audio_args: list[str | list[str]] = ["-an"]
        elif info.a_codec == "aac":
            audio_args = [["-map", "0:a:0"], ["-c:a", "copy"]]
        else:
            audio_args = [["-map", "0:a:0"], ["-c:a", "aac"], ["-b:a", "160k"]]

        filters: list[str] = []
        if max_size.width == info.width and max_size.height == info.height:
            filters.append("[0:v:0]copy[max]")
        elif max_size.width + 1 == info.width or max_size.height + 1 == info.height:
            # Odd original dimensions: crop a pixel instead of rescaling.
            filters.append(f"[0:v:0]crop={max_size.width}:{max_size.height}:0:0[max]")
        else:
            filters.append(
                f"[0:v:0]scale={max_size.width}:{max_size.height}:flags=lanczos[max]"
            )

        split = ["still", *[s.variant for s in sizes]]
        filters.append(f"[max]split={len(split)}" + "".join(f"[{v}in]" for v in split))

        outputs: list[str | list[str]] = [
            ["-map", "[stillin]"],
            ["-ss", f"{still_offset:g}"],
            ["-frames:v", "1"],
            str(still_file),
        ]
        for s in sizes:
            if s.variant == max_size.variant:
                filters.append(f"[{s.variant}in]copy[{s.variant}out]")
            else:
                filters.append(
                    f"[{s.variant}in]scale={s.width}:{s.height}:flags=lanczos[{s.variant}out]"
                )
            outputs.extend(
                [
                    ["-map", f"[{s.variant}out]"],
                    ["-c:v", "libx264"],
                    ["-preset", "slow"],
                    ["-profile:v", "high"],
                    ["-crf", "23"],
                    ["-g", "60"],
                    ["-pix_fmt", "yuv420p"],
                    *audio_args,
                    ["-map_metadata", "-1"],
                    ["-map_chapters", "-1"],
                    ["-movflags", "+faststart"],
                    str(tmp_file_variant(path, s.variant, PREVIEW_VIDEO_EXT)),
                ]
            )

        return [
            "-hide_banner",
            ["-err_detect", "explode", "-xerror"],
            ["-loglevel", "error"],
            ["-i", str(path)],
            "-y",
            ["-filter_complex", ";".join(filters)],
            *outputs,
        ]

    async def process_video(
        self, info: MediaInfo, path: Path
    ) -> tuple[dict[str, Previews], dict[str, StagedFile]]:
        """Transcode video previews and extract the poster frame.

        The largest preview replaces the original video, which is left out of
        the returned files (the caller owns and removes the input file).
        Animated images keep their original file as the "" variant.
        """
        assert info.width is not None and info.height is not None
        sizes = get_video_preview_sizes(
            Box(width=info.width, height=info.height), self.video_preview_short_sides
        )
        max_size = sizes[0]
        still_file = tmp_file_variant(path, "still", PREVIEW_IMAGE_EXT)
        video_outputs = [tmp_file_variant(path, s.variant, PREVIEW_VIDEO_EXT) for s in sizes]

        try:
            await run_tool(
                "ffmpeg",
                self._ffmpeg_args(info, path, sizes, still_file),
                timeout=self.tool_timeout,
            )
            still_info = MediaInfo(
                type="image",
                mime_type="image/webp",
                format="webp",
                extension=PREVIEW_IMAGE_EXT,
                width=max_size.width,
                height=max_size.height,
            )
            image_previews, image_files = await self.process_image(
                still_info, still_file, is_video_still=True
            )
        except BaseException:
            for p in (still_file, *video_outputs):
                unlink_if_exists(p)
            raise

        video_previews: Previews = {}
        video_files: dict[str, StagedFile] = {}
        for s, out_path in zip(sizes, video_outputs):
            video_previews[s.variant] = {"w": s.width, "h": s.height, "ext": PREVIEW_VIDEO_EXT}
            video_files[s.variant] = StagedFile(path=out_path, ext=PREVIEW_VIDEO_EXT)

        if info.is_animated_image:
            video_files[""] = StagedFile(path=path, ext=info.extension)
        else:
            video_previews[""] = video_previews.pop(max_size.variant)
            video_files[""] = video_files.pop(max_size.variant)

        return (
            {"video": video_previews, "image": image_previews},
            {**video_files, **image_files},
        )

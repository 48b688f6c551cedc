from __future__ import annotations

import mimetypes
import re
from pathlib import PurePath

OCTET_STREAM = "application/octet-stream"

# Builtin table only: results must not depend on the host's /etc/mime.types.
_MIME_TABLE = mimetypes.MimeTypes()
for _type, _ext in (
    ("image/webp", ".webp"),
    ("image/avif", ".avif"),
    ("image/heic", ".heic"),
    ("image/heif", ".heif"),
    ("audio/mpeg", ".mp3"),
    ("audio/mp4", ".m4a"),
    ("audio/ogg", ".ogg"),
    ("audio/x-ms-wma", ".wma"),
    ("video/mp4", ".mp4"),
    ("video/ogg", ".ogv"),
    ("video/x-ms-wmv", ".wmv"),
    ("text/plain", ".tmp"),
):
    _MIME_TABLE.add_type(_type, _ext)

# "{media type}:{format}" -> extension
_WELL_KNOWN_FORMATS: dict[str, str] = {}
for _media_type, _formats in {
    "image": ["png", "gif", "webp", "avif", "heic"],
    "audio": ["mp3", "ogg", "wav", "m4a"],
    "video": ["mp4"],
}.items():
    for _fmt in _formats:
        _WELL_KNOWN_FORMATS[f"{_media_type}:{_fmt}"] = _fmt

_WELL_KNOWN_FORMATS.update(
    {
        "image:jpeg": "jpg",
        "image:svg": "svg",
        "audio:mov": "m4a",
        "audio:asf": "wma",
        "video:mov": "mp4",
        "video:ogg": "ogv",
        "video:asf": "wmv",
        "video:gif": "gif",
    }
)

_EXT_CHARS_RE = re.compile(r"[^a-z0-9_]")


def extension_from_file_name(file_name: str) -> str:
    """Sanitized extension of a user-supplied file name (no dot, <= 6 chars)."""
    suffix = PurePath(file_name or "").suffix
    if not suffix:
        return ""
    return _EXT_CHARS_RE.sub("", suffix.lower())[:6]


def file_extension_for(media_type: str, fmt: str, file_name: str) -> str:
    ext = _WELL_KNOWN_FORMATS.get(f"{media_type}:{fmt}")
    if ext:
        return ext
    return extension_from_file_name(file_name)


def mime_type_for_extension(ext: str) -> str:
    if not ext:
        return OCTET_STREAM
    mime, _ = _MIME_TABLE.guess_type(f"file.{ext}", strict=False)
    return mime or OCTET_STREAM


def mime_type_for_file_name(file_name: str) -> str | None:
    mime, _ = _MIME_TABLE.guess_type(PurePath(file_name or "").name.lower(), strict=False)
    return mime


def general_file_extension(mime_type: str, file_name: str) -> str:
    """Extension of an unrecognized file: the declared one if it agrees with the
    sniffed type, otherwise one derived from the sniffed type."""
    declared = extension_from_file_name(file_name)
    if mime_type == OCTET_STREAM:
        return declared
    if declared and mime_type_for_extension(declared) == mime_type:
        return declared
    guessed = _MIME_TABLE.guess_extension(mime_type, strict=False)
    if guessed:
        return _EXT_CHARS_RE.sub("", guessed.lower())[:6]
    return declared

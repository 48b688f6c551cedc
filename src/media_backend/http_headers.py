from __future__ import annotations

from collections.abc import Container
from pathlib import PurePath
from urllib.parse import quote


def sanitize_filename(filename: str | None, *, fallback: str = "download") -> str:
    v = (filename or "").strip()
    # Defend against client-supplied paths.
    v = v.split("/")[-1].split("\\")[-1]
    # Defend against header injection.
    v = v.replace("\r", "").replace("\n", "").replace("\x00", "")
    if not v:
        v = fallback
    # Keep headers reasonably small.
    if len(v) > 150:
        v = v[:150]
    return v


def variant_file_name(file_name: str, ext: str) -> str:
    """Download name of a stored variant: the uploaded name's stem plus ``ext``."""
    stem = PurePath(sanitize_filename(file_name)).stem or "download"
    return f"{stem}.{ext}" if ext else stem


def build_content_disposition(
    file_name: str, mime_type: str, inline_mime_types: Container[str]
) -> str:
    """Cross-browser Content-Disposition value.

    Includes both `filename=` (ASCII fallback, non-ASCII characters replaced
    by `_`) and RFC 5987 `filename*=` (UTF-8).
    """
    name = sanitize_filename(file_name)
    ascii_name = "".join(ch if ord(ch) < 128 else "_" for ch in name)
    ascii_name = ascii_name.replace('"', "'")
    disposition = "inline" if mime_type in inline_mime_types else "attachment"
    return (
        f"{disposition}; filename=\"{ascii_name}\"; "
        f"filename*=utf-8''{quote(name, safe='!*()~')}"
    )

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from pathlib import Path

from media_backend.errors import TransientToolError
from media_backend.spawn import run_tool

logger = logging.getLogger(__name__)

SANITIZE_NONE = 0
SANITIZE_VERSION = 1

# Groups that describe the file or are computed by exiftool; never writable.
_READ_ONLY_GROUPS = frozenset({"ExifTool", "File", "System", "Composite", "SourceFile"})


class MetadataSanitizer:
    """Strips configured metadata tags (EXIF, XMP, IPTC, ID3...) using exiftool."""

    def __init__(
        self,
        *,
        remove_tags: Iterable[str],
        ignore_tags: Iterable[str] = (),
        tool_timeout: float,
    ) -> None:
        self._remove = [re.compile(p) for p in remove_tags]
        self._ignore = [re.compile(p) for p in ignore_tags]
        self._tool_timeout = tool_timeout

    async def read_tags(self, file_path: Path) -> dict[str, object]:
        out = await run_tool(
            "exiftool",
            ["-json", "-G1", "-a", str(file_path)],
            timeout=self._tool_timeout,
        )
        rows = json.loads(out.stdout or b"[]")
        return dict(rows[0]) if rows else {}

    def tags_to_remove(self, tags: Iterable[str]) -> list[str]:
        result: list[str] = []
        for full_name in tags:
            group, _, name = full_name.rpartition(":")
            if not name or group in _READ_ONLY_GROUPS or full_name in _READ_ONLY_GROUPS:
                continue
            if not any(r.search(name) for r in self._remove):
                continue
            if any(r.search(name) for r in self._ignore):
                continue
            result.append(full_name)
        return result

    async def sanitize(self, file_path: str | Path) -> bool:
        """Remove matching tags in place. Returns True if the file was changed.

        Tool failures are soft: the file is left untouched (exiftool writes to a
        temporary file and renames it over the original) and False is returned.
        """
        path = Path(file_path)
        try:
            tags = await self.read_tags(path)
        except (TransientToolError, ValueError) as exc:
            logger.warning("cannot read metadata of %s: %s", path, exc)
            return False

        to_clean = self.tags_to_remove(tags.keys())
        if not to_clean:
            return False

        try:
            await run_tool(
                "exiftool",
                [
                    "-overwrite_original",
                    "-ignoreMinorErrors",
                    *[f"-{tag}=" for tag in to_clean],
                    str(path),
                ],
                timeout=self._tool_timeout,
            )
        except TransientToolError as exc:
            # Some exiftool "errors" are really warnings.
            if "Warning:" not in exc.message:
                logger.warning("cannot sanitize %s: %s", path, exc, exc_info=True)
            return False

        logger.debug("removed %d metadata tags from %s", len(to_clean), path)
        return True

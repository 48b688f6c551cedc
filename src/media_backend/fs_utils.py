from __future__ import annotations

import errno
import logging
import os
import shutil
import time
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

TMP_FILE_PREFIX = "upl-"


def unlink_if_exists(path: str | Path) -> bool:
    try:
        os.unlink(path)
    except FileNotFoundError:
        return False
    return True


def move_file(src: str | Path, dest: str | Path) -> None:
    """Move ``src`` to ``dest`` so that ``dest`` never appears half-written.

    Same-filesystem moves are a single rename. Across filesystems the data is
    copied next to ``dest`` first and then renamed into place.
    """
    dest_path = Path(dest)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.replace(src, dest_path)
        return
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise

    tmp_path = dest_path.with_name(f".{dest_path.name}.{uuid.uuid4().hex}.tmp")
    try:
        shutil.copyfile(src, tmp_path)
        os.replace(tmp_path, dest_path)
    except BaseException:
        unlink_if_exists(tmp_path)
        raise
    os.unlink(src)


def new_tmp_path(tmp_dir: str | Path) -> Path:
    path = Path(tmp_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path / f"{TMP_FILE_PREFIX}{uuid.uuid4().hex}"


def tmp_file_variant(file_path: str | Path, variant: str, ext: str) -> Path:
    """Staging path of a derivative of ``file_path``."""
    suffix = f"{variant}.{ext}" if variant else ext
    return Path(f"{file_path}.variant.{suffix}")


def sweep_stale_temp_files(tmp_dir: str | Path, *, max_age_seconds: int) -> int:
    """Delete staging files left behind by crashed processes."""
    root = Path(tmp_dir)
    if not root.is_dir():
        return 0

    cutoff = time.time() - max_age_seconds
    removed = 0
    for path in root.glob(f"{TMP_FILE_PREFIX}*"):
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except FileNotFoundError:
            continue
    if removed:
        logger.info("removed %d stale temp files from %s", removed, root)
    return removed

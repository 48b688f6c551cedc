from __future__ import annotations

import shutil
from pathlib import Path

from starlette.concurrency import run_in_threadpool

from media_backend.errors import NotFoundError, StorageError
from media_backend.fs_utils import move_file, unlink_if_exists


def _safe_join(root: Path, key: str) -> Path:
    parts = [p for p in key.split("/") if p]
    if not parts or any(p in {"..", "."} or "\\" in p for p in parts):
        raise ValueError("invalid storage key")
    return root.joinpath(*parts)


class LocalObjectStorage:
    """Stores objects as files under ``root_dir``; headers are not persisted."""

    def __init__(self, *, root_dir: str) -> None:
        self._root = Path(root_dir)

    @property
    def root_dir(self) -> Path:
        return self._root

    def resolve_path(self, key: str) -> Path:
        return _safe_join(self._root, key)

    async def place(
        self,
        local_path: Path,
        key: str,
        *,
        content_type: str,
        content_disposition: str,
    ) -> None:
        _ = (content_type, content_disposition)
        path = self.resolve_path(key)
        try:
            await run_in_threadpool(move_file, local_path, path)
        except OSError as exc:
            raise StorageError(f"cannot place {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        path = self.resolve_path(key)
        try:
            await run_in_threadpool(unlink_if_exists, path)
        except OSError as exc:
            raise StorageError(f"cannot delete {key}: {exc}") from exc

    async def fetch_to_local(self, key: str, dest_path: Path) -> None:
        path = self.resolve_path(key)
        if not path.is_file():
            raise NotFoundError(f"storage object not found: {key}")
        try:
            await run_in_threadpool(shutil.copyfile, path, dest_path)
        except OSError as exc:
            raise StorageError(f"cannot fetch {key}: {exc}") from exc

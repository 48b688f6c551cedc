from __future__ import annotations

from pathlib import Path
from typing import Protocol

from media_backend.config import LocalStorageConfig, S3StorageConfig, StorageConfig


class ObjectStorage(Protocol):
    async def place(
        self,
        local_path: Path,
        key: str,
        *,
        content_type: str,
        content_disposition: str,
    ) -> None:
        """Store a staged file under ``key``. The local file is consumed."""
        ...

    async def delete(self, key: str) -> None:
        """Delete ``key``; a missing object is not an error."""
        ...

    async def fetch_to_local(self, key: str, dest_path: Path) -> None: ...


def build_attachment_storage_key(
    prefix: str, attachment_id: str, variant: str, ext: str
) -> str:
    # Pinned layout: {prefix}{variant/}{attachment_id}.{ext}; "" is the original.
    name = f"{attachment_id}.{ext}" if ext else attachment_id
    if variant:
        return f"{prefix}{variant}/{name}"
    return f"{prefix}{name}"


def build_object_storage(config: StorageConfig) -> ObjectStorage:
    if isinstance(config, S3StorageConfig):
        from .s3_storage import S3ObjectStorage

        return S3ObjectStorage(
            endpoint_url=config.endpoint_url,
            region=config.region,
            bucket=config.bucket,
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
            force_path_style=config.force_path_style,
            acl=config.acl,
        )

    assert isinstance(config, LocalStorageConfig)
    from .local_storage import LocalObjectStorage

    return LocalObjectStorage(root_dir=config.root_dir)

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

from media_backend.errors import NotFoundError, StorageError
from media_backend.fs_utils import unlink_if_exists

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})


def _is_not_found(exc: ClientError) -> bool:
    code = str((exc.response.get("Error") or {}).get("Code") or "")
    return code in _NOT_FOUND_CODES


@dataclass(frozen=True)
class S3Config:
    endpoint_url: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    force_path_style: bool
    acl: str


class S3ObjectStorage:
    def __init__(
        self,
        *,
        endpoint_url: str,
        region: str,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        force_path_style: bool,
        acl: str = "public-read",
    ) -> None:
        self._cfg = S3Config(
            endpoint_url=endpoint_url,
            region=region,
            bucket=bucket,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            force_path_style=force_path_style,
            acl=acl,
        )

        import boto3

        addressing_style = "path" if force_path_style else "virtual"
        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region or None,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(s3={"addressing_style": addressing_style}),
        )

    async def place(
        self,
        local_path: Path,
        key: str,
        *,
        content_type: str,
        content_disposition: str,
    ) -> None:
        def _put() -> None:
            kwargs: dict[str, object] = {
                "Bucket": self._cfg.bucket,
                "Key": key,
                "ContentType": content_type,
                "ContentDisposition": content_disposition,
            }
            if self._cfg.acl:
                kwargs["ACL"] = self._cfg.acl
            with open(local_path, "rb") as fh:
                kwargs["Body"] = fh
                self._client.put_object(**kwargs)

        try:
            await run_in_threadpool(_put)
        except (ClientError, BotoCoreError, OSError) as exc:
            raise StorageError(f"cannot upload {key}: {exc}") from exc
        unlink_if_exists(local_path)

    async def delete(self, key: str) -> None:
        def _delete() -> None:
            self._client.delete_object(Bucket=self._cfg.bucket, Key=key)

        try:
            await run_in_threadpool(_delete)
        except ClientError as exc:
            if _is_not_found(exc):
                logger.debug("s3 object already gone: %s", key)
                return
            raise StorageError(f"cannot delete {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"cannot delete {key}: {exc}") from exc

    async def fetch_to_local(self, key: str, dest_path: Path) -> None:
        def _get() -> None:
            resp = self._client.get_object(Bucket=self._cfg.bucket, Key=key)
            body = resp.get("Body")
            # StreamingBody.read() is blocking; run in threadpool.
            data = body.read() if body is not None else b""
            Path(dest_path).write_bytes(data)

        try:
            await run_in_threadpool(_get)
        except ClientError as exc:
            if _is_not_found(exc):
                raise NotFoundError(f"storage object not found: {key}") from exc
            raise StorageError(f"cannot fetch {key}: {exc}") from exc
        except (BotoCoreError, OSError) as exc:
            raise StorageError(f"cannot fetch {key}: {exc}") from exc

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from botocore.exceptions import ClientError

from media_backend.errors import NotFoundError, StorageError
from media_backend.integrations.storage.local_storage import LocalObjectStorage
from media_backend.integrations.storage.s3_storage import S3ObjectStorage


@pytest.mark.anyio
async def test_local_storage_place_fetch_delete(tmp_path: Path):
    storage = LocalObjectStorage(root_dir=str(tmp_path / "root"))
    staged = tmp_path / "upl-1"
    staged.write_bytes(b"data")

    await storage.place(staged, "attachments/a1.txt", content_type="text/plain", content_disposition="")
    assert not staged.exists()
    assert (tmp_path / "root" / "attachments" / "a1.txt").read_bytes() == b"data"

    dest = tmp_path / "copy"
    await storage.fetch_to_local("attachments/a1.txt", dest)
    assert dest.read_bytes() == b"data"

    await storage.delete("attachments/a1.txt")
    assert not (tmp_path / "root" / "attachments" / "a1.txt").exists()
    # Missing objects are not an error.
    await storage.delete("attachments/a1.txt")

    with pytest.raises(NotFoundError):
        await storage.fetch_to_local("attachments/a1.txt", dest)


def test_local_storage_rejects_path_traversal(tmp_path: Path):
    storage = LocalObjectStorage(root_dir=str(tmp_path))
    with pytest.raises(ValueError):
        storage.resolve_path("attachments/../../etc/passwd")
    with pytest.raises(ValueError):
        storage.resolve_path("./x")
    with pytest.raises(ValueError):
        storage.resolve_path("attachments/./a1.txt")
    with pytest.raises(ValueError):
        storage.resolve_path("/")
    assert storage.resolve_path("/attachments//a1.txt") == tmp_path / "attachments" / "a1.txt"


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakeS3Client:
    def __init__(self) -> None:
        self.put_calls: list[dict[str, Any]] = []
        self.get_calls: list[dict[str, Any]] = []
        self.delete_calls: list[dict[str, Any]] = []
        self.delete_error: str | None = None

    def put_object(self, **kwargs: Any) -> None:
        body = kwargs.pop("Body")
        self.put_calls.append({**kwargs, "Data": body.read()})

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self.get_calls.append({"Bucket": Bucket, "Key": Key})
        if Key == "missing":
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(b"hello")}

    def delete_object(self, *, Bucket: str, Key: str) -> None:
        self.delete_calls.append({"Bucket": Bucket, "Key": Key})
        if self.delete_error:
            raise ClientError({"Error": {"Code": self.delete_error}}, "DeleteObject")


@pytest.fixture
def fake_s3(monkeypatch: pytest.MonkeyPatch) -> _FakeS3Client:
    fake = _FakeS3Client()

    import boto3

    def _fake_client(service_name: str, **kwargs: Any):
        _ = kwargs
        assert service_name == "s3"
        return fake

    async def _run_inline(fn, *args, **kwargs):  # type: ignore[no-untyped-def]
        return fn(*args, **kwargs)

    monkeypatch.setattr(boto3, "client", _fake_client)
    monkeypatch.setattr(
        "media_backend.integrations.storage.s3_storage.run_in_threadpool", _run_inline
    )
    return fake


def _s3() -> S3ObjectStorage:
    return S3ObjectStorage(
        endpoint_url="http://localhost:9000",
        region="",
        bucket="bucket",
        access_key_id="ak",
        secret_access_key="sk",
        force_path_style=True,
    )


@pytest.mark.anyio
async def test_s3_place_uploads_with_headers_and_consumes_file(
    tmp_path: Path, fake_s3: _FakeS3Client
):
    staged = tmp_path / "upl-1"
    staged.write_bytes(b"data")

    await _s3().place(
        staged,
        "attachments/a1.jpg",
        content_type="image/jpeg",
        content_disposition='inline; filename="a.jpg"',
    )

    assert fake_s3.put_calls == [
        {
            "Bucket": "bucket",
            "Key": "attachments/a1.jpg",
            "ContentType": "image/jpeg",
            "ContentDisposition": 'inline; filename="a.jpg"',
            "ACL": "public-read",
            "Data": b"data",
        }
    ]
    assert not staged.exists()


@pytest.mark.anyio
async def test_s3_fetch_and_delete(tmp_path: Path, fake_s3: _FakeS3Client):
    s = _s3()
    dest = tmp_path / "out"
    await s.fetch_to_local("k1", dest)
    assert dest.read_bytes() == b"hello"

    with pytest.raises(NotFoundError):
        await s.fetch_to_local("missing", dest)

    await s.delete("k2")
    fake_s3.delete_error = "NoSuchKey"
    await s.delete("k3")
    assert [c["Key"] for c in fake_s3.delete_calls] == ["k2", "k3"]

    fake_s3.delete_error = "AccessDenied"
    with pytest.raises(StorageError):
        await s.delete("k4")

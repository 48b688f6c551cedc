from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
from conftest import FakeTools, audio_probe, image_bytes, stored_files, video_probe
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from media_backend.db import session_scope
from media_backend.domain.attachment import FileVariant, load_attachment
from media_backend.errors import (
    InvariantViolation,
    NotFoundError,
    QuotaExceededError,
    StorageError,
)
from media_backend.media.process import STUB_CONTENT
from media_backend.models import Attachment, Post, User
from media_backend.repositories import attachments_repo, jobs_repo
from media_backend.services import attachments_service as svc
from media_backend.services import quota
from media_backend.services.pipeline import MediaPipeline

pytestmark = pytest.mark.usefixtures("db")

UserFactory = Callable[..., Awaitable[User]]
Stage = Callable[[bytes], Path]


def _media(pipeline: MediaPipeline) -> Path:
    return Path(pipeline.settings.attachments_local_dir)


def _tmp_files(pipeline: MediaPipeline) -> list[str]:
    return stored_files(Path(pipeline.settings.attachments_tmp_dir))


async def _create(
    pipeline: MediaPipeline, path: Path, file_name: str, user: User, post_id: str | None = None
) -> Attachment:
    async with session_scope() as session:
        return await svc.create_attachment(
            session, pipeline, file_path=path, file_name=file_name, user=user, post_id=post_id
        )


async def _reload(attachment_id: str) -> Attachment | None:
    async with session_scope() as session:
        return await attachments_repo.get_attachment_by_id(session, attachment_id=attachment_id)


async def _finalize(pipeline: MediaPipeline, attachment_id: str) -> None:
    async with session_scope() as session:
        jobs = await jobs_repo.list_jobs(session, name=svc.ATTACHMENT_PREPARE_VIDEO)
        job = next(j for j in jobs if j.payload["attId"] == attachment_id)
        await svc.finalize_attachment_creation(
            session, pipeline, attachment_id=attachment_id, file_path=job.payload["filePath"]
        )


@pytest.mark.anyio
async def test_create_image_places_original_and_previews(
    pipeline: MediaPipeline,
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
    events: list[tuple[str, str]],
):
    user = await create_user()
    att = await _create(pipeline, stage(image_bytes((900, 300))), "wide.png", user)

    assert att.media_type == "image"
    assert att.file_name == "wide.png"
    assert att.file_extension == "png"
    assert (att.width, att.height) == (900, 300)
    assert att.previews == {
        "image": {
            "": {"w": 900, "h": 300, "ext": "png"},
            "thumbnails": {"w": 525, "h": 175, "ext": "webp"},
        }
    }
    assert att.sanitized == 0
    assert not att.in_progress
    assert stored_files(_media(pipeline)) == [
        f"attachments/{att.id}.png",
        f"attachments/thumbnails/{att.id}.webp",
    ]
    assert _tmp_files(pipeline) == []
    assert events == [("attachment_created", att.id)]


@pytest.mark.anyio
async def test_create_sanitizes_when_user_asks_for_it(
    pipeline: MediaPipeline, stage: Stage, create_user: UserFactory, fake_tools: FakeTools
):
    user = await create_user(sanitize=True)
    fake_tools.tags = {"GPS:GPSLatitude": 55.7, "IFD0:Make": "Canon"}
    att = await _create(pipeline, stage(image_bytes((100, 100), "JPEG")), "a.jpg", user)

    assert att.sanitized == 1
    assert fake_tools.exif_writes == [["GPS:GPSLatitude"]]


@pytest.mark.anyio
async def test_create_rejects_foreign_post(
    pipeline: MediaPipeline, stage: Stage, create_user: UserFactory, fake_tools: FakeTools
):
    owner = await create_user("owner")
    other = await create_user("other")
    async with session_scope() as session:
        assert owner.id is not None
        session.add(Post(id="p1", user_id=owner.id))
        await session.commit()

    with pytest.raises(NotFoundError):
        await _create(pipeline, stage(image_bytes((10, 10))), "a.png", other, post_id="p1")
    assert _tmp_files(pipeline) == []
    assert stored_files(_media(pipeline)) == []


@pytest.mark.anyio
async def test_video_is_deferred_then_finalized(
    pipeline: MediaPipeline,
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
    events: list[tuple[str, str]],
):
    user = await create_user()
    data = fake_tools.register(b"FAKE-VIDEO", video_probe(1920, 1080))
    staged = stage(data)
    att = await _create(pipeline, staged, "clip.mp4", user)

    assert att.in_progress
    assert att.meta == {"inProgress": True}
    assert att.media_type == "video"
    assert att.file_extension == "tmp"
    assert (att.width, att.height) == (1920, 1080)
    assert stored_files(_media(pipeline)) == [f"attachments/{att.id}.tmp"]
    # The original waits for the job in the staging dir.
    assert _tmp_files(pipeline) == [staged.name]
    async with session_scope() as session:
        jobs = await jobs_repo.list_jobs(session)
    assert [(j.name, j.uniq_key, j.payload) for j in jobs] == [
        (svc.ATTACHMENT_PREPARE_VIDEO, att.id, {"attId": att.id, "filePath": str(staged)})
    ]

    await _finalize(pipeline, att.id)

    final = await _reload(att.id)
    assert final is not None
    assert not final.in_progress
    assert final.meta == {}
    assert final.mime_type == "video/mp4"
    assert final.file_extension == "mp4"
    assert final.file_name == "clip.mp4"
    assert (final.width, final.height) == (1920, 1080)
    assert set(final.previews["video"]) == {"", "v2", "v1"}
    assert set(final.previews["image"]) == {"poster", "thumbnails", "thumbnails2"}
    assert stored_files(_media(pipeline)) == sorted(
        [
            f"attachments/{att.id}.mp4",
            f"attachments/v1/{att.id}.mp4",
            f"attachments/v2/{att.id}.mp4",
            f"attachments/poster/{att.id}.webp",
            f"attachments/thumbnails/{att.id}.webp",
            f"attachments/thumbnails2/{att.id}.webp",
        ]
    )
    assert _tmp_files(pipeline) == []
    assert events == [("attachment_created", att.id), ("attachment_updated", att.id)]

    # A repeated job run is a no-op.
    ffmpeg_runs = fake_tools.count("ffmpeg")
    async with session_scope() as session:
        await svc.finalize_attachment_creation(
            session, pipeline, attachment_id=att.id, file_path=staged
        )
    assert fake_tools.count("ffmpeg") == ffmpeg_runs
    assert len(events) == 2


@pytest.mark.anyio
async def test_deferred_original_moves_to_shared_dir(
    pipeline_factory: Callable[..., MediaPipeline],
    tmp_path: Path,
    create_user: UserFactory,
    fake_tools: FakeTools,
):
    shared = tmp_path / "shared"
    pipeline = pipeline_factory(shared_media_dir=str(shared))
    user = await create_user()
    data = fake_tools.register(b"FAKE-VIDEO", video_probe(640, 360))
    staged = Path(pipeline.settings.attachments_tmp_dir) / "upl-shared"
    staged.parent.mkdir(parents=True, exist_ok=True)
    staged.write_bytes(data)

    att = await _create(pipeline, staged, "clip.mp4", user)

    assert (shared / f"{att.id}.orig").read_bytes() == data
    assert _tmp_files(pipeline) == []
    await _finalize(pipeline, att.id)
    assert list(shared.iterdir()) == []


@pytest.mark.anyio
async def test_finalize_falls_back_to_general_file(
    pipeline: MediaPipeline,
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
    events: list[tuple[str, str]],
):
    user = await create_user()
    data = fake_tools.register(b"FAKE-VIDEO", video_probe(640, 360))
    att = await _create(pipeline, stage(data), "clip.mp4", user)

    fake_tools.fail.add("ffmpeg")
    await _finalize(pipeline, att.id)

    final = await _reload(att.id)
    assert final is not None
    assert final.media_type == "general"
    assert final.mime_type == "video/mp4"
    assert final.file_extension == "mp4"
    assert final.previews == {}
    assert not final.in_progress
    assert stored_files(_media(pipeline)) == [f"attachments/{att.id}.mp4"]
    assert (_media(pipeline) / f"attachments/{att.id}.mp4").read_bytes() == data
    assert _tmp_files(pipeline) == []
    assert events[-1] == ("attachment_updated", att.id)


@pytest.mark.anyio
async def test_finalize_of_deleted_attachment_drops_the_input(
    pipeline: MediaPipeline, stage: Stage, fake_tools: FakeTools
):
    path = stage(b"whatever")
    async with session_scope() as session:
        await svc.finalize_attachment_creation(
            session, pipeline, attachment_id="gone", file_path=path
        )
    assert not path.exists()


@pytest.mark.anyio
async def test_in_progress_quota(
    pipeline_factory: Callable[..., MediaPipeline],
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
):
    pipeline = pipeline_factory(user_media_processing_limit=2)
    user = await create_user()
    other = await create_user("other")
    data = fake_tools.register(b"FAKE-VIDEO", video_probe(640, 360))

    first = await _create(pipeline, stage(data), "1.mp4", user)
    await _create(pipeline, stage(data), "2.mp4", user)

    with pytest.raises(QuotaExceededError) as exc_info:
        await _create(pipeline, stage(data), "3.mp4", user)
    assert exc_info.value.limit == 2
    assert len(stored_files(_media(pipeline))) == 2
    assert len(_tmp_files(pipeline)) == 2
    async with session_scope() as session:
        assert len(await jobs_repo.list_jobs(session)) == 2

    # Quotas are per user; images never count.
    await _create(pipeline, stage(data), "4.mp4", other)
    await _create(pipeline, stage(image_bytes((10, 10))), "5.png", user)

    # Finalizing frees a slot.
    await _finalize(pipeline, first.id)
    again = await _create(pipeline, stage(data), "6.mp4", user)
    assert again.in_progress


@pytest.mark.anyio
async def test_delete_removes_every_stored_file(
    pipeline: MediaPipeline,
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
    events: list[tuple[str, str]],
):
    user = await create_user()
    assert user.id is not None
    async with session_scope() as session:
        session.add(Post(id="p1", user_id=user.id))
        await session.commit()
    att = await _create(pipeline, stage(image_bytes((900, 300))), "a.png", user, post_id="p1")
    assert len(stored_files(_media(pipeline))) == 2

    async with session_scope() as session:
        row = await attachments_repo.get_attachment_by_id(session, attachment_id=att.id)
        assert row is not None
        await svc.delete_attachment(session, pipeline, row)

    assert stored_files(_media(pipeline)) == []
    assert await _reload(att.id) is None
    assert events[-1] == ("post_updated", "p1")


@pytest.mark.anyio
async def test_sanitize_original(
    pipeline: MediaPipeline,
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
    events: list[tuple[str, str]],
):
    user = await create_user()
    att = await _create(pipeline, stage(image_bytes((100, 100), "JPEG")), "a.jpg", user)
    assert att.sanitized == 0

    fake_tools.tags = {"GPS:GPSLatitude": 55.7}
    async with session_scope() as session:
        row = await attachments_repo.get_attachment_by_id(session, attachment_id=att.id)
        assert row is not None
        assert await svc.sanitize_original(session, pipeline, row) is True
        assert row.sanitized == 1
        # Nothing left to remove
        assert await svc.sanitize_original(session, pipeline, row) is False

    assert events[-1] == ("attachment_updated", att.id)
    assert stored_files(_media(pipeline)) == [f"attachments/{att.id}.jpg"]
    assert _tmp_files(pipeline) == []


@pytest.mark.anyio
async def test_sanitize_refuses_in_progress_attachment(
    pipeline: MediaPipeline, stage: Stage, create_user: UserFactory, fake_tools: FakeTools
):
    user = await create_user()
    data = fake_tools.register(b"FAKE-VIDEO", video_probe(640, 360))
    att = await _create(pipeline, stage(data), "clip.mp4", user)

    async with session_scope() as session:
        row = await attachments_repo.get_attachment_by_id(session, attachment_id=att.id)
        assert row is not None
        with pytest.raises(InvariantViolation):
            await svc.sanitize_original(session, pipeline, row)


@pytest.mark.anyio
async def test_sanitize_user_attachments_batch(
    pipeline: MediaPipeline, stage: Stage, create_user: UserFactory, fake_tools: FakeTools
):
    user = await create_user()
    assert user.id is not None
    kept = await _create(pipeline, stage(image_bytes((20, 20))), "a.png", user)
    lost = await _create(pipeline, stage(image_bytes((30, 30))), "b.png", user)
    (_media(pipeline) / f"attachments/{lost.id}.png").unlink()

    async with session_scope() as session:
        assert await attachments_repo.get_attachments_stats(session, user_id=user.id) == {
            "total": 2,
            "sanitized": 0,
        }
        handled = await svc.sanitize_user_attachments(
            session, pipeline, user_id=user.id, batch_size=10
        )
        assert handled == 2
        assert await attachments_repo.get_attachments_stats(session, user_id=user.id) == {
            "total": 2,
            "sanitized": 2,
        }
        assert (
            await svc.sanitize_user_attachments(session, pipeline, user_id=user.id, batch_size=10)
            == 0
        )
    assert kept.id != lost.id


@pytest.mark.anyio
async def test_regenerate_previews_with_new_sizes(
    pipeline: MediaPipeline,
    pipeline_factory: Callable[..., MediaPipeline],
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
):
    user = await create_user()
    att = await _create(pipeline, stage(image_bytes((900, 300))), "wide.png", user)

    resized = pipeline_factory(image_preview_sizes={"small": (300, 100)})
    async with session_scope() as session:
        row = await attachments_repo.get_attachment_by_id(session, attachment_id=att.id)
        assert row is not None
        row = await svc.regenerate_previews(session, resized, row)

    assert row.previews == {
        "image": {
            "": {"w": 900, "h": 300, "ext": "png"},
            "small": {"w": 300, "h": 100, "ext": "webp"},
        }
    }
    assert stored_files(_media(pipeline)) == [
        f"attachments/{att.id}.png",
        f"attachments/small/{att.id}.webp",
    ]
    assert _tmp_files(pipeline) == []


def test_load_legacy_image_record():
    row = Attachment(
        id="a1",
        user_id=1,
        media_type="image",
        mime_type="image/jpeg",
        file_extension="jpg",
        file_name="x.jpg",
        image_sizes={
            "o": {"w": 800, "h": 600, "url": "http://cdn/attachments/a1.jpg"},
            "t": {"w": 233, "h": 175, "url": "http://cdn/attachments/thumbnails/a1.webp"},
        },
    )
    data = load_attachment(row)

    assert data.previews == {
        "image": {
            "": {"w": 800, "h": 600, "ext": "jpg"},
            "thumbnails": {"w": 233, "h": 175, "ext": "webp"},
        }
    }
    assert (data.width, data.height) == (800, 600)
    assert data.all_file_variants() == [
        FileVariant(variant="", ext="jpg"),
        FileVariant(variant="thumbnails", ext="webp"),
    ]
    assert data.rel_file_path("thumbnails", prefix="attachments/") == "attachments/thumbnails/a1.webp"


def test_load_legacy_audio_record():
    row = Attachment(
        id="a2",
        user_id=1,
        media_type="audio",
        mime_type="audio/mpeg",
        file_extension="mp3",
        file_name="song.mp3",
        title="Song",
        artist="Band",
    )
    data = load_attachment(row)

    assert data.previews == {"audio": {"": {"ext": "mp3"}}}
    assert data.meta == {"dc:title": "Song", "dc:creator": "Band"}
    assert data.file_url(prefix="attachments/", base_url="http://cdn/") == (
        "http://cdn/attachments/a2.mp3"
    )


def test_in_progress_record_has_only_the_stub():
    row = Attachment(
        id="a3",
        user_id=1,
        media_type="video",
        mime_type="text/plain",
        file_extension="tmp",
        file_name="clip.mp4",
        previews={},
        meta={"inProgress": True},
    )
    data = load_attachment(row)
    assert data.is_in_progress
    assert data.all_file_variants() == [FileVariant(variant="", ext="tmp")]
    assert data.max_sized_variant("video") is None


@pytest.mark.anyio
async def test_audio_upload(
    pipeline: MediaPipeline, stage: Stage, create_user: UserFactory, fake_tools: FakeTools
):
    user = await create_user()
    data = fake_tools.register(b"FAKE-AUDIO", audio_probe(tags={"title": "Song"}))
    att = await _create(pipeline, stage(data), "song.mp3", user)

    assert att.media_type == "audio"
    assert att.meta == {"dc:title": "Song"}
    assert stored_files(_media(pipeline)) == [f"attachments/{att.id}.mp3"]


@pytest.mark.anyio
async def test_failed_placement_removes_already_placed_files(
    pipeline: MediaPipeline,
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
    events: list[tuple[str, str]],
    monkeypatch: pytest.MonkeyPatch,
):
    user = await create_user()
    place = pipeline.storage.place
    calls: list[str] = []

    async def _place_twice(local_path: Path, key: str, **kwargs: str) -> None:
        calls.append(key)
        if len(calls) > 1:
            raise StorageError(f"cannot place {key}: disk full")
        await place(local_path, key, **kwargs)

    monkeypatch.setattr(pipeline.storage, "place", _place_twice)

    with pytest.raises(StorageError):
        await _create(pipeline, stage(image_bytes((900, 300))), "wide.png", user)

    assert len(calls) == 2
    assert stored_files(_media(pipeline)) == []
    assert _tmp_files(pipeline) == []
    assert events == []
    async with session_scope() as session:
        assert (await session.exec(select(Attachment))).all() == []


@pytest.mark.anyio
async def test_finalize_keeps_job_input_when_record_update_fails(
    pipeline: MediaPipeline,
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
    events: list[tuple[str, str]],
    monkeypatch: pytest.MonkeyPatch,
):
    user = await create_user()
    data = fake_tools.register(b"FAKE-VIDEO", video_probe(640, 360))
    staged = stage(data)
    att = await _create(pipeline, staged, "clip.mp4", user)

    fake_tools.fail.add("ffmpeg")
    update = attachments_repo.update_attachment
    failures: list[str] = []

    async def _update_fails_once(session: Any, row: Attachment, fields: dict[str, Any]) -> Any:
        if not failures:
            failures.append(row.id)
            raise OperationalError("UPDATE attachments", {}, Exception("database is locked"))
        return await update(session, row, fields)

    monkeypatch.setattr(attachments_repo, "update_attachment", _update_fails_once)

    with pytest.raises(OperationalError):
        await _finalize(pipeline, att.id)

    assert staged.read_bytes() == data
    assert _tmp_files(pipeline) == [staged.name]
    assert stored_files(_media(pipeline)) == [f"attachments/{att.id}.tmp"]
    row = await _reload(att.id)
    assert row is not None and row.in_progress
    assert events == [("attachment_created", att.id)]

    await _finalize(pipeline, att.id)

    final = await _reload(att.id)
    assert final is not None
    assert final.media_type == "general"
    assert not final.in_progress
    assert stored_files(_media(pipeline)) == [f"attachments/{att.id}.mp4"]
    assert (_media(pipeline) / f"attachments/{att.id}.mp4").read_bytes() == data
    assert _tmp_files(pipeline) == []
    assert events[-1] == ("attachment_updated", att.id)


@pytest.mark.anyio
async def test_finalize_writes_placeholder_when_job_input_is_gone(
    pipeline: MediaPipeline,
    stage: Stage,
    create_user: UserFactory,
    fake_tools: FakeTools,
    events: list[tuple[str, str]],
):
    user = await create_user()
    data = fake_tools.register(b"FAKE-VIDEO", video_probe(1920, 1080))
    staged = stage(data)
    att = await _create(pipeline, staged, "clip.mp4", user)
    staged.unlink()

    await _finalize(pipeline, att.id)

    final = await _reload(att.id)
    assert final is not None
    assert final.media_type == "general"
    assert final.file_extension == "mp4"
    assert final.mime_type == "video/mp4"
    assert final.file_size == len(STUB_CONTENT)
    assert not final.in_progress
    assert stored_files(_media(pipeline)) == [f"attachments/{att.id}.mp4"]
    assert (_media(pipeline) / f"attachments/{att.id}.mp4").read_bytes() == STUB_CONTENT
    assert _tmp_files(pipeline) == []
    assert events[-1] == ("attachment_updated", att.id)


@pytest.mark.anyio
async def test_try_reserve_counts_in_progress_stubs(
    pipeline: MediaPipeline, stage: Stage, create_user: UserFactory, fake_tools: FakeTools
):
    user = await create_user()
    assert user.id is not None
    data = fake_tools.register(b"FAKE-VIDEO", video_probe(1920, 1080))
    await _create(pipeline, stage(data), "clip.mp4", user)

    async with session_scope() as session:
        assert await quota.count_in_progress(session, user_id=user.id) == 1
        assert await quota.try_reserve(session, user_id=user.id, limit=2) is True
        assert await quota.try_reserve(session, user_id=user.id, limit=1) is False
        assert await quota.try_reserve(session, user_id=user.id + 1, limit=1) is True

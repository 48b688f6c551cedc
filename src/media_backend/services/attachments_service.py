"""Attachment lifecycle: ingestion, deferred finalization, sanitizing, removal.

Storage placement always happens before the record that references the
placed files is written, and every placement made by a failing operation is
undone. Undo steps are collected on an ``AsyncExitStack`` and dropped with
``pop_all()`` once the operation has succeeded.
"""

from __future__ import annotations

import logging
import shutil
import uuid
from collections.abc import Iterable, Mapping
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession
from starlette.concurrency import run_in_threadpool

from media_backend.domain.attachment import AttachmentData, load_attachment
from media_backend.errors import (
    ContentTooLargeError,
    InvariantViolation,
    MediaError,
    NotFoundError,
    ValidationError,
)
from media_backend.fs_utils import (
    move_file,
    new_tmp_path,
    tmp_file_variant,
    unlink_if_exists,
)
from media_backend.http_headers import build_content_disposition, variant_file_name
from media_backend.integrations.storage.object_storage import (
    ObjectStorage,
    build_attachment_storage_key,
)
from media_backend.media.file_ext import extension_from_file_name, mime_type_for_extension
from media_backend.media.process import STUB_CONTENT
from media_backend.media.sanitize import SANITIZE_NONE, SANITIZE_VERSION
from media_backend.media.types import MediaProcessResult, StagedFile
from media_backend.models import Attachment, User
from media_backend.repositories import attachments_repo, jobs_repo
from media_backend.services.pipeline import MediaPipeline
from media_backend.services.quota import ensure_can_defer, quota_lock_key

logger = logging.getLogger(__name__)

ATTACHMENT_PREPARE_VIDEO = "ATTACHMENT_PREPARE_VIDEO"
ATTACHMENTS_SANITIZE = "ATTACHMENTS_SANITIZE"


def attachment_lock_key(attachment_id: str) -> str:
    return f"attachment:{attachment_id}"


def _storage_key(pipeline: MediaPipeline, attachment_id: str, variant: str, ext: str) -> str:
    return build_attachment_storage_key(
        pipeline.settings.attachments_path, attachment_id, variant, ext
    )


def _stored_keys(pipeline: MediaPipeline, data: AttachmentData) -> list[str]:
    return [
        _storage_key(pipeline, data.id, fv.variant, fv.ext) for fv in data.all_file_variants()
    ]


async def _delete_quietly(storage: ObjectStorage, key: str) -> None:
    # Undo step; a failure must not mask the error being unwound.
    try:
        await storage.delete(key)
    except (MediaError, ValueError):
        logger.warning("cannot delete %s while rolling back", key, exc_info=True)


async def _delete_record_quietly(session: AsyncSession, att: Attachment) -> None:
    try:
        await session.rollback()
        await attachments_repo.delete_attachment(session, att)
    except SQLAlchemyError:
        logger.warning("cannot delete attachment %s while rolling back", att.id, exc_info=True)


async def _place_object(
    pipeline: MediaPipeline,
    *,
    local_path: Path,
    key: str,
    file_name: str,
    ext: str,
) -> None:
    mime_type = mime_type_for_extension(ext)
    disposition = build_content_disposition(
        variant_file_name(file_name, ext), mime_type, pipeline.settings.inline_mime_types
    )
    await pipeline.storage.place(
        local_path, key, content_type=mime_type, content_disposition=disposition
    )


async def _place_files(
    pipeline: MediaPipeline,
    stack: AsyncExitStack,
    *,
    attachment_id: str,
    file_name: str,
    files: Mapping[str, StagedFile],
    existing_keys: Iterable[str] = (),
) -> set[str]:
    """Place staged files; each placement registers its own undo on ``stack``.

    Keys in ``existing_keys`` are overwritten in place and cannot be undone.
    """
    existing = set(existing_keys)
    placed: set[str] = set()
    for variant, staged in files.items():
        key = _storage_key(pipeline, attachment_id, variant, staged.ext)
        await _place_object(
            pipeline, local_path=staged.path, key=key, file_name=file_name, ext=staged.ext
        )
        if key not in existing:
            stack.push_async_callback(_delete_quietly, pipeline.storage, key)
        placed.add(key)
    logger.debug("placed %d files for %s", len(placed), attachment_id)
    return placed


async def _delete_obsolete_keys(
    pipeline: MediaPipeline, attachment_id: str, keys: Iterable[str]
) -> None:
    for key in keys:
        try:
            await pipeline.storage.delete(key)
        except MediaError:
            logger.warning(
                "cannot delete obsolete file %s of %s", key, attachment_id, exc_info=True
            )


def _unlink_all(paths: Iterable[Path]) -> None:
    for p in paths:
        unlink_if_exists(p)


async def _emit_updated(pipeline: MediaPipeline, data: AttachmentData) -> None:
    await pipeline.events.attachment_updated(data.id)
    if data.post_id:
        await pipeline.events.post_updated(data.post_id)


def _final_fields(result: MediaProcessResult) -> dict[str, Any]:
    # The uploaded file name is display-only and never changes.
    fields = result.record_fields()
    fields.pop("file_name")
    return fields


async def create_prepare_video_job(
    session: AsyncSession, *, attachment_id: str, file_path: Path
) -> None:
    logger.info("creating %s job for %s", ATTACHMENT_PREPARE_VIDEO, attachment_id)
    await jobs_repo.create_job(
        session,
        name=ATTACHMENT_PREPARE_VIDEO,
        payload={"attId": attachment_id, "filePath": str(file_path)},
        uniq_key=attachment_id,
    )


async def create_attachment(
    session: AsyncSession,
    pipeline: MediaPipeline,
    *,
    file_path: str | Path,
    file_name: str,
    user: User,
    post_id: str | None = None,
) -> Attachment:
    """Ingest an uploaded file that was staged at ``file_path``.

    The staged file is consumed: it ends up in storage, is handed over to the
    video preparation job, or is deleted.
    """
    cfg = pipeline.settings
    path = Path(file_path)
    assert user.id is not None
    temp_files: list[Path] = [path]
    handed_off: set[Path] = set()

    try:
        if not path.is_file():
            raise ValidationError("No file uploaded")
        if path.stat().st_size > cfg.attachments_max_size_bytes:
            raise ContentTooLargeError(
                f"File is too large (the maximum size is {cfg.attachments_max_size_bytes} bytes)"
            )

        if post_id is not None:
            post = await attachments_repo.get_post(session, post_id=post_id)
            if post is None or post.user_id != user.id:
                raise NotFoundError(f"Post {post_id} not found")

        sanitized = SANITIZE_NONE
        if user.sanitize_media_metadata:
            await pipeline.sanitizer.sanitize(path)
            sanitized = SANITIZE_VERSION

        result = await pipeline.processor.process(path, file_name)
        temp_files.extend(f.path for f in result.files.values())

        attachment_id = str(uuid.uuid4())
        if result.in_progress:
            async with pipeline.locks.hold(quota_lock_key(user.id)):
                await ensure_can_defer(
                    session, user_id=user.id, limit=cfg.user_media_processing_limit
                )
                att, job_file = await _store_deferred(
                    session,
                    pipeline,
                    attachment_id=attachment_id,
                    user=user,
                    post_id=post_id,
                    sanitized=sanitized,
                    result=result,
                )
            handed_off.add(result.files["original"].path)
            logger.info("attachment %s deferred, original at %s", att.id, job_file)
        else:
            att = await _store_final(
                session,
                pipeline,
                attachment_id=attachment_id,
                user=user,
                post_id=post_id,
                sanitized=sanitized,
                result=result,
            )
            logger.info("attachment %s created (%s)", att.id, att.media_type)
    finally:
        _unlink_all(p for p in temp_files if p not in handed_off)

    await pipeline.events.attachment_created(att.id)
    return att


async def _store_final(
    session: AsyncSession,
    pipeline: MediaPipeline,
    *,
    attachment_id: str,
    user: User,
    post_id: str | None,
    sanitized: int,
    result: MediaProcessResult,
) -> Attachment:
    assert user.id is not None
    async with AsyncExitStack() as stack:
        await _place_files(
            pipeline,
            stack,
            attachment_id=attachment_id,
            file_name=result.file_name,
            files=result.files,
        )
        att = await attachments_repo.create_attachment(
            session,
            attachment_id=attachment_id,
            user_id=user.id,
            post_id=post_id,
            fields={**result.record_fields(), "sanitized": sanitized},
        )
        stack.pop_all()
    return att


async def _store_deferred(
    session: AsyncSession,
    pipeline: MediaPipeline,
    *,
    attachment_id: str,
    user: User,
    post_id: str | None,
    sanitized: int,
    result: MediaProcessResult,
) -> tuple[Attachment, Path]:
    assert user.id is not None
    cfg = pipeline.settings
    original = result.files["original"]
    stub_files = {k: v for k, v in result.files.items() if k != "original"}

    async with AsyncExitStack() as stack:
        await _place_files(
            pipeline,
            stack,
            attachment_id=attachment_id,
            file_name=result.file_name,
            files=stub_files,
        )
        att = await attachments_repo.create_attachment(
            session,
            attachment_id=attachment_id,
            user_id=user.id,
            post_id=post_id,
            fields={**result.record_fields(), "sanitized": sanitized},
        )
        stack.push_async_callback(_delete_record_quietly, session, att)

        job_file = original.path
        if cfg.shared_media_dir:
            job_file = Path(cfg.shared_media_dir) / f"{attachment_id}.orig"
            logger.debug("moving %s to %s for further processing", original.path, job_file)
            await run_in_threadpool(move_file, original.path, job_file)
            stack.callback(unlink_if_exists, job_file)

        await create_prepare_video_job(session, attachment_id=attachment_id, file_path=job_file)
        stack.pop_all()
    return att, job_file


async def finalize_attachment_creation(
    session: AsyncSession,
    pipeline: MediaPipeline,
    *,
    attachment_id: str,
    file_path: str | Path,
) -> None:
    """Turn a stub record into the final attachment (the video preparation job).

    A no-op if the attachment is gone or already finalized. Processing
    failures degrade the attachment to a general file; storage failures
    propagate so that the job is retried with its input intact.
    """
    async with pipeline.locks.hold(attachment_lock_key(attachment_id)):
        row = await attachments_repo.get_attachment_by_id(session, attachment_id=attachment_id)
        if row is None:
            logger.info("attachment %s does not exist, nothing to finalize", attachment_id)
            unlink_if_exists(file_path)
            return

        data = load_attachment(row)
        if not data.is_in_progress:
            logger.info("attachment %s is already processed", attachment_id)
            return

        path = Path(file_path)
        stub_keys = set(_stored_keys(pipeline, data))
        temp_files: list[Path] = []
        try:
            try:
                result = await pipeline.processor.process(path, data.file_name, synchronous=True)
                temp_files.extend(f.path for f in result.files.values())
                if "" not in result.files:
                    raise InvariantViolation("no original file to upload")
                files = dict(result.files)
                fields = _final_fields(result)
            except Exception as exc:
                logger.warning(
                    "cannot process %s (%s), treating it as a general file",
                    attachment_id,
                    exc,
                    exc_info=True,
                )
                _unlink_all(p for p in temp_files if p != path)
                files, fields = _general_fallback(pipeline, data, path)
                temp_files = [f.path for f in files.values()]

            files = await _copy_job_input(files, path)
            temp_files.extend(f.path for f in files.values())

            async with AsyncExitStack() as stack:
                placed = await _place_files(
                    pipeline,
                    stack,
                    attachment_id=data.id,
                    file_name=data.file_name,
                    files=files,
                    existing_keys=stub_keys,
                )
                row = await attachments_repo.update_attachment(session, row, fields)
                stack.pop_all()
        except BaseException:
            # Keep the job input for a retry; drop everything derived from it.
            _unlink_all(p for p in temp_files if p != path)
            raise

        unlink_if_exists(path)
        _unlink_all(temp_files)
        # Only the stub is obsolete; a new file may have landed on the same key.
        await _delete_obsolete_keys(pipeline, data.id, stub_keys - placed)

    logger.info("attachment %s finalized as %s", attachment_id, row.media_type)
    await _emit_updated(pipeline, data)


async def _copy_job_input(files: Mapping[str, StagedFile], path: Path) -> dict[str, StagedFile]:
    """Stage a copy wherever the job input itself would be placed.

    Placing consumes the staged file, and the job input must survive a
    failed attempt.
    """
    out: dict[str, StagedFile] = {}
    for variant, staged in files.items():
        if staged.path == path:
            copy = tmp_file_variant(path, variant or "orig", staged.ext)
            await run_in_threadpool(shutil.copyfile, path, copy)
            staged = StagedFile(path=copy, ext=staged.ext)
        out[variant] = staged
    return out


def _general_fallback(
    pipeline: MediaPipeline, data: AttachmentData, path: Path
) -> tuple[dict[str, StagedFile], dict[str, Any]]:
    ext = extension_from_file_name(data.file_name)
    if not path.is_file():
        # Nothing left to serve; keep the record valid with a placeholder.
        logger.error("job file %s of %s is missing", path, data.id)
        path = new_tmp_path(pipeline.settings.attachments_tmp_dir)
        path.write_bytes(STUB_CONTENT)
    return (
        {"": StagedFile(path=path, ext=ext)},
        {
            "media_type": "general",
            "file_extension": ext,
            "file_size": path.stat().st_size,
            "mime_type": mime_type_for_extension(ext),
            "previews": {},
            "meta": {},
            "width": None,
            "height": None,
            "duration": None,
        },
    )


async def delete_attachment(
    session: AsyncSession, pipeline: MediaPipeline, attachment: Attachment
) -> None:
    """Delete every stored file of the attachment, then its record."""
    async with pipeline.locks.hold(attachment_lock_key(attachment.id)):
        data = load_attachment(attachment)
        for key in _stored_keys(pipeline, data):
            await pipeline.storage.delete(key)
        await attachments_repo.delete_attachment(session, attachment)
    logger.info("attachment %s deleted", data.id)
    if data.post_id:
        await pipeline.events.post_updated(data.post_id)


async def _fetch_original(pipeline: MediaPipeline, data: AttachmentData) -> Path:
    local = new_tmp_path(pipeline.settings.attachments_tmp_dir)
    key = _storage_key(pipeline, data.id, "", data.file_extension)
    try:
        await pipeline.storage.fetch_to_local(key, local)
    except BaseException:
        unlink_if_exists(local)
        raise
    return local


async def sanitize_original(
    session: AsyncSession, pipeline: MediaPipeline, attachment: Attachment
) -> bool:
    """Download the original, strip its metadata and upload it back if changed.

    Returns True if the stored file was replaced. The attachment is marked as
    sanitized at the current version either way.
    """
    async with pipeline.locks.hold(attachment_lock_key(attachment.id)):
        data = load_attachment(attachment)
        if data.is_in_progress:
            raise InvariantViolation("The attachment is being processed")

        sanitized = max(data.sanitized, SANITIZE_VERSION)
        local = await _fetch_original(pipeline, data)
        try:
            updated = await pipeline.sanitizer.sanitize(local)
            if not updated:
                if data.sanitized != sanitized:
                    await attachments_repo.update_attachment(
                        session, attachment, {"sanitized": sanitized}
                    )
                return False

            file_size = local.stat().st_size
            await _place_object(
                pipeline,
                local_path=local,
                key=_storage_key(pipeline, data.id, "", data.file_extension),
                file_name=data.file_name,
                ext=data.file_extension,
            )
            await attachments_repo.update_attachment(
                session, attachment, {"sanitized": sanitized, "file_size": file_size}
            )
        finally:
            unlink_if_exists(local)

    await pipeline.events.attachment_updated(data.id)
    return True


async def start_sanitize_task(session: AsyncSession, *, user_id: int) -> None:
    await jobs_repo.create_job(
        session,
        name=ATTACHMENTS_SANITIZE,
        payload={"userId": user_id},
        uniq_key=str(user_id),
    )


async def sanitize_user_attachments(
    session: AsyncSession,
    pipeline: MediaPipeline,
    *,
    user_id: int,
    batch_size: int,
) -> int:
    """Sanitize the next batch of the user's not yet sanitized attachments.

    Returns the number of attachments handled; fewer than ``batch_size``
    means the user has nothing left.
    """
    rows = await attachments_repo.get_non_sanitized_attachments(
        session, user_id=user_id, limit=batch_size
    )
    for row in rows:
        try:
            await sanitize_original(session, pipeline, row)
        except NotFoundError:
            # The file is gone, there is nothing to sanitize.
            logger.warning("original of %s is missing in storage", row.id)
            await attachments_repo.update_attachment(
                session, row, {"sanitized": max(row.sanitized, SANITIZE_VERSION)}
            )
        except InvariantViolation:
            logger.info("skipping %s: it is being processed", row.id)
    logger.info("sanitized %d attachments of user %s", len(rows), user_id)
    return len(rows)


async def regenerate_previews(
    session: AsyncSession, pipeline: MediaPipeline, attachment: Attachment
) -> Attachment:
    """Re-derive all previews from the stored original."""
    async with pipeline.locks.hold(attachment_lock_key(attachment.id)):
        data = load_attachment(attachment)
        if data.is_in_progress:
            raise InvariantViolation("The attachment is being processed")

        old_keys = set(_stored_keys(pipeline, data))
        local = await _fetch_original(pipeline, data)
        temp_files: list[Path] = [local]
        try:
            result = await pipeline.processor.process(local, data.file_name, synchronous=True)
            temp_files.extend(f.path for f in result.files.values())
            async with AsyncExitStack() as stack:
                placed = await _place_files(
                    pipeline,
                    stack,
                    attachment_id=data.id,
                    file_name=data.file_name,
                    files=result.files,
                    existing_keys=old_keys,
                )
                attachment = await attachments_repo.update_attachment(
                    session, attachment, _final_fields(result)
                )
                stack.pop_all()
        finally:
            _unlink_all(temp_files)

        await _delete_obsolete_keys(pipeline, data.id, old_keys - placed)

    logger.info("previews of %s regenerated", data.id)
    await _emit_updated(pipeline, data)
    return attachment

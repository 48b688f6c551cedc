"""Attachments router."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import Response
from sqlmodel.ext.asyncio.session import AsyncSession
from starlette.concurrency import run_in_threadpool

from media_backend.db import get_session
from media_backend.deps import get_current_user
from media_backend.domain.attachment import load_attachment
from media_backend.errors import NotFoundError
from media_backend.fs_utils import new_tmp_path, unlink_if_exists
from media_backend.models import Attachment, User
from media_backend.repositories import attachments_repo
from media_backend.schemas import (
    AttachmentListOut,
    AttachmentOut,
    AttachmentsStats,
    SanitizeResult,
)
from media_backend.services import attachments_service
from media_backend.services.pipeline import MediaPipeline, get_media_pipeline

router = APIRouter()

_CHUNK_SIZE = 1024 * 1024


async def _save_upload_limited(*, file: UploadFile, dest: Path, max_bytes: int) -> int:
    # Stream to disk and hard-stop once size exceeds max_bytes.
    written = 0
    with open(dest, "wb") as fh:
        while True:
            chunk = await file.read(_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if max_bytes > 0 and written > max_bytes:
                raise HTTPException(
                    status_code=status.HTTP_413_CONTENT_TOO_LARGE,
                    detail="attachment too large",
                )
            await run_in_threadpool(fh.write, chunk)
    return written


async def _get_own_attachment(
    session: AsyncSession, *, user: User, attachment_id: str
) -> Attachment:
    assert user.id is not None
    att = await attachments_repo.get_attachment_by_id(
        session, attachment_id=attachment_id, user_id=int(user.id)
    )
    if att is None:
        raise NotFoundError("attachment not found")
    return att


@router.post(
    "/attachments",
    response_model=AttachmentOut,
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachment(
    file: Annotated[UploadFile, File()],
    post_id: Annotated[str | None, Form()] = None,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> AttachmentOut:
    cfg = pipeline.settings
    tmp_path = new_tmp_path(cfg.attachments_tmp_dir)
    try:
        await _save_upload_limited(
            file=file, dest=tmp_path, max_bytes=int(cfg.attachments_max_size_bytes)
        )
    except BaseException:
        unlink_if_exists(tmp_path)
        raise

    # create_attachment owns tmp_path from here on.
    att = await attachments_service.create_attachment(
        session,
        pipeline,
        file_path=tmp_path,
        file_name=file.filename or "",
        user=user,
        post_id=post_id or None,
    )
    return AttachmentOut.from_data(load_attachment(att), cfg)


@router.get("/attachments", response_model=AttachmentListOut)
async def list_attachments(
    limit: int = Query(default=30, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> AttachmentListOut:
    assert user.id is not None
    rows = await attachments_repo.list_attachments(
        session, user_id=int(user.id), limit=limit, offset=offset
    )
    return AttachmentListOut(
        items=[AttachmentOut.from_data(load_attachment(r), pipeline.settings) for r in rows],
        limit=limit,
        offset=offset,
    )


@router.get("/attachments/stats", response_model=AttachmentsStats)
async def get_attachments_stats(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> AttachmentsStats:
    assert user.id is not None
    stats = await attachments_repo.get_attachments_stats(session, user_id=int(user.id))
    return AttachmentsStats(**stats)


@router.post("/attachments/sanitize", status_code=status.HTTP_202_ACCEPTED)
async def start_sanitize_task(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Response:
    assert user.id is not None
    await attachments_service.start_sanitize_task(session, user_id=int(user.id))
    return Response(status_code=status.HTTP_202_ACCEPTED)


@router.get("/attachments/{attachment_id}", response_model=AttachmentOut)
async def get_attachment(
    attachment_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> AttachmentOut:
    att = await _get_own_attachment(session, user=user, attachment_id=attachment_id)
    return AttachmentOut.from_data(load_attachment(att), pipeline.settings)


@router.delete("/attachments/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_attachment(
    attachment_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> Response:
    att = await _get_own_attachment(session, user=user, attachment_id=attachment_id)
    await attachments_service.delete_attachment(session, pipeline, att)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/attachments/{attachment_id}/sanitize", response_model=SanitizeResult)
async def sanitize_attachment(
    attachment_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> SanitizeResult:
    att = await _get_own_attachment(session, user=user, attachment_id=attachment_id)
    updated = await attachments_service.sanitize_original(session, pipeline, att)
    return SanitizeResult(updated=updated, sanitized=att.sanitized)


@router.post("/attachments/{attachment_id}/previews", response_model=AttachmentOut)
async def regenerate_previews(
    attachment_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> AttachmentOut:
    att = await _get_own_attachment(session, user=user, attachment_id=attachment_id)
    att = await attachments_service.regenerate_previews(session, pipeline, att)
    return AttachmentOut.from_data(load_attachment(att), pipeline.settings)

from __future__ import annotations

import uuid
from typing import Any

import sqlalchemy as sa
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from media_backend.media.sanitize import SANITIZE_VERSION
from media_backend.models import Attachment, Post, utc_now


def _apply_fields(att: Attachment, fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        if not hasattr(att, key) or key in {"id", "user_id", "created_at"}:
            raise ValueError(f"unknown attachment field: {key}")
        setattr(att, key, value)
    if "meta" in fields:
        # Kept in sync with meta.inProgress for the quota count.
        att.in_progress = bool((att.meta or {}).get("inProgress"))


async def create_attachment(
    session: AsyncSession,
    *,
    user_id: int,
    post_id: str | None,
    fields: dict[str, Any],
    attachment_id: str | None = None,
) -> Attachment:
    now = utc_now()
    att = Attachment(
        id=attachment_id or str(uuid.uuid4()),
        user_id=user_id,
        post_id=post_id,
        created_at=now,
        updated_at=now,
    )
    _apply_fields(att, {"previews": {}, "meta": {}, **fields})
    session.add(att)
    await session.commit()
    await session.refresh(att)
    return att


async def get_attachment_by_id(
    session: AsyncSession, *, attachment_id: str, user_id: int | None = None
) -> Attachment | None:
    stmt = select(Attachment).where(Attachment.id == attachment_id)
    if user_id is not None:
        stmt = stmt.where(Attachment.user_id == user_id)
    att = (await session.exec(stmt)).first()
    if att is not None:
        # Another session (a worker) may have changed the row.
        await session.refresh(att)
    return att


async def update_attachment(
    session: AsyncSession, att: Attachment, fields: dict[str, Any]
) -> Attachment:
    _apply_fields(att, fields)
    att.updated_at = utc_now()
    session.add(att)
    await session.commit()
    await session.refresh(att)
    return att


async def delete_attachment(session: AsyncSession, att: Attachment) -> None:
    await session.delete(att)
    await session.commit()


async def get_in_progress_attachments_number(session: AsyncSession, *, user_id: int) -> int:
    stmt = (
        select(sa.func.count())
        .select_from(Attachment)
        .where(Attachment.user_id == user_id)
        .where(col(Attachment.in_progress).is_(True))
    )
    return int((await session.exec(stmt)).one())


async def list_attachments(
    session: AsyncSession, *, user_id: int, limit: int, offset: int = 0
) -> list[Attachment]:
    stmt = (
        select(Attachment)
        .where(Attachment.user_id == user_id)
        .order_by(col(Attachment.created_at).desc(), col(Attachment.id).desc())
        .offset(offset)
        .limit(limit)
    )
    return list((await session.exec(stmt)).all())


async def get_non_sanitized_attachments(
    session: AsyncSession, *, user_id: int, limit: int
) -> list[Attachment]:
    stmt = (
        select(Attachment)
        .where(Attachment.user_id == user_id)
        .where(Attachment.sanitized != SANITIZE_VERSION)
        .where(col(Attachment.in_progress).is_(False))
        .order_by(col(Attachment.created_at))
        .limit(limit)
    )
    return list((await session.exec(stmt)).all())


async def get_attachments_stats(session: AsyncSession, *, user_id: int) -> dict[str, int]:
    stmt = (
        select(Attachment.sanitized, sa.func.count())
        .where(Attachment.user_id == user_id)
        .group_by(col(Attachment.sanitized))
    )
    rows = (await session.exec(stmt)).all()
    return {
        "total": sum(int(n) for _, n in rows),
        "sanitized": sum(int(n) for v, n in rows if v == SANITIZE_VERSION),
    }


async def get_post(session: AsyncSession, *, post_id: str) -> Post | None:
    return (await session.exec(select(Post).where(Post.id == post_id))).first()


async def touch_post(session: AsyncSession, post: Post) -> None:
    post.updated_at = utc_now()
    session.add(post)
    await session.commit()

from __future__ import annotations

import logging

from sqlmodel.ext.asyncio.session import AsyncSession

from media_backend.errors import QuotaExceededError
from media_backend.repositories import attachments_repo

logger = logging.getLogger(__name__)


def quota_lock_key(user_id: int) -> str:
    return f"quota:{user_id}"


async def count_in_progress(session: AsyncSession, *, user_id: int) -> int:
    return await attachments_repo.get_in_progress_attachments_number(session, user_id=user_id)


async def try_reserve(session: AsyncSession, *, user_id: int, limit: int) -> bool:
    """Whether the user may start another deferred job.

    Nothing is recorded here: the stub record the caller creates next is what
    takes the slot, and finalizing (or deleting) that stub releases it.
    Callers hold ``quota_lock_key`` until the new stub is persisted.
    """
    in_progress = await count_in_progress(session, user_id=user_id)
    if in_progress >= limit:
        logger.info(
            "user %s has %d attachments in progress (limit %d), rejecting upload",
            user_id,
            in_progress,
            limit,
        )
        return False
    return True


async def ensure_can_defer(session: AsyncSession, *, user_id: int, limit: int) -> None:
    """Raise ``QuotaExceededError`` if :func:`try_reserve` refuses."""
    if not await try_reserve(session, user_id=user_id, limit=limit):
        raise QuotaExceededError(limit)

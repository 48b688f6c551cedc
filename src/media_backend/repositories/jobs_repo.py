from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from media_backend.models import Job, utc_now


async def _find_job(session: AsyncSession, *, name: str, uniq_key: str) -> Job | None:
    stmt = select(Job).where(Job.name == name).where(Job.uniq_key == uniq_key)
    return (await session.exec(stmt)).first()


async def create_job(
    session: AsyncSession,
    *,
    name: str,
    payload: dict[str, Any],
    uniq_key: str | None = None,
    delay_seconds: float = 0,
) -> Job:
    """Enqueue a job. A pending job with the same ``(name, uniq_key)`` is
    updated in place instead of duplicated."""
    unlock_at = utc_now() + timedelta(seconds=delay_seconds)

    if uniq_key is not None:
        existing = await _find_job(session, name=name, uniq_key=uniq_key)
        if existing is not None:
            existing.payload = dict(payload)
            existing.unlock_at = unlock_at
            session.add(existing)
            await session.commit()
            return existing

    job = Job(
        id=str(uuid.uuid4()),
        name=name,
        payload=dict(payload),
        uniq_key=uniq_key,
        unlock_at=unlock_at,
    )
    try:
        session.add(job)
        await session.commit()
    except IntegrityError:
        # Lost a race with another producer of the same unique job.
        await session.rollback()
        if uniq_key is None:
            raise
        existing = await _find_job(session, name=name, uniq_key=uniq_key)
        if existing is None:
            raise
        return existing
    return job


async def get_job(session: AsyncSession, *, job_id: str) -> Job | None:
    return (await session.exec(select(Job).where(Job.id == job_id))).first()


async def list_jobs(session: AsyncSession, *, name: str | None = None) -> list[Job]:
    stmt = select(Job).order_by(col(Job.created_at))
    if name is not None:
        stmt = stmt.where(Job.name == name)
    return list((await session.exec(stmt)).all())


async def fetch_due_jobs(
    session: AsyncSession,
    *,
    limit: int,
    limited_jobs: Mapping[str, int] | None = None,
) -> list[Job]:
    """Due jobs, oldest first, respecting per-name concurrency limits.

    A limited job name only yields as many jobs as it has free slots; jobs of
    that name which are currently locked (unlock_at in the future) take slots.
    """
    now = utc_now()
    remaining: dict[str, int] = {}
    for name, job_limit in (limited_jobs or {}).items():
        stmt = (
            select(sa.func.count())
            .select_from(Job)
            .where(Job.name == name)
            .where(Job.unlock_at > now)
        )
        taken = int((await session.exec(stmt)).one())
        remaining[name] = max(job_limit - taken, 0)

    stmt = select(Job).where(Job.unlock_at <= now).order_by(col(Job.unlock_at))
    result: list[Job] = []
    for job in (await session.exec(stmt)).all():
        if job.name in remaining:
            if remaining[job.name] <= 0:
                continue
            remaining[job.name] -= 1
        result.append(job)
        if len(result) >= limit:
            break
    return result


async def lock_job(session: AsyncSession, job: Job, *, lock_seconds: float) -> bool:
    """Claim a due job. Returns False if another worker claimed it first."""
    now = utc_now()
    stmt = (
        sa.update(Job)
        .where(col(Job.id) == job.id)
        .where(col(Job.attempts) == job.attempts)
        .where(col(Job.unlock_at) <= now)
        .values(unlock_at=now + timedelta(seconds=lock_seconds), attempts=Job.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.exec(stmt)
    await session.commit()
    return result.rowcount == 1


async def extend_job_lock(session: AsyncSession, *, job_id: str, lock_seconds: float) -> None:
    stmt = (
        sa.update(Job)
        .where(col(Job.id) == job_id)
        .values(unlock_at=utc_now() + timedelta(seconds=lock_seconds))
        .execution_options(synchronize_session=False)
    )
    await session.exec(stmt)
    await session.commit()


async def reschedule_job(
    session: AsyncSession, *, job_id: str, delay_seconds: float, failure: bool = True
) -> None:
    values: dict[str, Any] = {"unlock_at": utc_now() + timedelta(seconds=delay_seconds)}
    if failure:
        values["failures"] = Job.failures + 1
    stmt = (
        sa.update(Job)
        .where(col(Job.id) == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.exec(stmt)
    await session.commit()


async def delete_job(session: AsyncSession, *, job_id: str) -> None:
    await session.exec(sa.delete(Job).where(col(Job.id) == job_id))
    await session.commit()

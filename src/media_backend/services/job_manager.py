"""Polling job runner over the ``jobs`` table.

Jobs are claimed with ``jobs_repo.lock_job`` (a conditional update), so any
number of worker processes can share one queue. A claimed job stays locked
while its handler runs; on failure it is retried with exponential backoff.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from media_backend.db import session_scope
from media_backend.models import Job
from media_backend.repositories import jobs_repo

logger = logging.getLogger(__name__)

# A handler may return a delay in seconds to run the job again later
# (without counting it as a failure); None means the job is done.
JobHandler = Callable[[Job], Awaitable[float | None]]
SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class JobManager:
    def __init__(
        self,
        *,
        batch_size: int = 10,
        lock_seconds: float = 120,
        poll_interval: float = 5,
        retry_base_seconds: float = 30,
        max_retry_seconds: float = 60 * 60,
        session_factory: SessionFactory = session_scope,
    ) -> None:
        self.batch_size = batch_size
        self.lock_seconds = lock_seconds
        self.poll_interval = poll_interval
        self.retry_base_seconds = retry_base_seconds
        self.max_retry_seconds = max_retry_seconds
        self._session_factory = session_factory
        self._handlers: dict[str, JobHandler] = {}
        # job name -> max number of such jobs running at once
        self.limited_jobs: dict[str, int] = {}

    def on(self, name: str, handler: JobHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"handler for {name} is already registered")
        self._handlers[name] = handler

    def retry_delay(self, failures: int) -> float:
        return min(self.retry_base_seconds * 2**failures, self.max_retry_seconds)

    async def fetch_and_process(self) -> int:
        """Claim the due jobs and run them. Returns the number of jobs run."""
        async with self._session_factory() as session:
            due = await jobs_repo.fetch_due_jobs(
                session, limit=self.batch_size, limited_jobs=self.limited_jobs
            )
            claimed: list[Job] = []
            for job in due:
                if await jobs_repo.lock_job(session, job, lock_seconds=self.lock_seconds):
                    claimed.append(job)
                else:
                    logger.debug("job %s was claimed by another worker", job.id)

        if claimed:
            await asyncio.gather(*(self._process(job) for job in claimed))
        return len(claimed)

    async def _process(self, job: Job) -> None:
        handler = self._handlers.get(job.name)
        if handler is None:
            logger.error("no handler for job %s (%s)", job.id, job.name)
            await self._reschedule(job, self.retry_delay(job.failures), failure=True)
            return

        logger.info("running job %s (%s), attempt %d", job.id, job.name, job.attempts + 1)
        try:
            again_in = await self._run_locked(handler, job)
        except Exception:
            delay = self.retry_delay(job.failures)
            logger.exception("job %s (%s) failed, retrying in %gs", job.id, job.name, delay)
            await self._reschedule(job, delay, failure=True)
            return

        if again_in is not None:
            await self._reschedule(job, again_in, failure=False)
            return

        async with self._session_factory() as session:
            await jobs_repo.delete_job(session, job_id=job.id)

    async def _run_locked(self, handler: JobHandler, job: Job) -> float | None:
        keeper = asyncio.create_task(self._keep_locked(job.id))
        try:
            return await handler(job)
        finally:
            keeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keeper

    async def _keep_locked(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.lock_seconds / 2)
            try:
                async with self._session_factory() as session:
                    await jobs_repo.extend_job_lock(
                        session, job_id=job_id, lock_seconds=self.lock_seconds
                    )
            except SQLAlchemyError:
                logger.warning("cannot extend the lock of job %s", job_id, exc_info=True)

    async def _reschedule(self, job: Job, delay: float, *, failure: bool) -> None:
        async with self._session_factory() as session:
            await jobs_repo.reschedule_job(
                session, job_id=job.id, delay_seconds=delay, failure=failure
            )

    async def run(self, stop: asyncio.Event) -> None:
        """Process jobs until ``stop`` is set."""
        logger.info("job manager started, handlers: %s", ", ".join(sorted(self._handlers)))
        while not stop.is_set():
            try:
                processed = await self.fetch_and_process()
            except SQLAlchemyError:
                logger.exception("cannot fetch jobs")
                processed = 0

            if processed >= self.batch_size:
                continue
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
        logger.info("job manager stopped")

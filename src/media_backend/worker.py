"""Background worker: runs the attachment jobs.

    python -m media_backend.worker
"""

from __future__ import annotations

import asyncio
import logging
import signal

from starlette.concurrency import run_in_threadpool

from media_backend.config import Settings, settings
from media_backend.db import dispose_engine
from media_backend.fs_utils import sweep_stale_temp_files
from media_backend.services.attachment_jobs import init_handlers
from media_backend.services.job_manager import JobManager
from media_backend.services.pipeline import MediaPipeline, build_media_pipeline

logger = logging.getLogger(__name__)


def build_job_manager(cfg: Settings, pipeline: MediaPipeline) -> JobManager:
    manager = JobManager(
        batch_size=cfg.job_batch_size,
        lock_seconds=cfg.job_lock_seconds,
        poll_interval=cfg.job_poll_interval_seconds,
    )
    init_handlers(manager, pipeline)
    return manager


async def run_worker(stop: asyncio.Event) -> None:
    await run_in_threadpool(
        sweep_stale_temp_files,
        settings.attachments_tmp_dir,
        max_age_seconds=settings.tmp_file_max_age_seconds,
    )
    manager = build_job_manager(settings, build_media_pipeline(settings))
    try:
        await manager.run(stop)
    finally:
        await dispose_engine()


async def _main() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await run_worker(stop)


def main() -> None:
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    asyncio.run(_main())


if __name__ == "__main__":
    main()

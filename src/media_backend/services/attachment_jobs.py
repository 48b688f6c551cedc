from __future__ import annotations

import logging

from media_backend.db import session_scope
from media_backend.models import Job
from media_backend.services.attachments_service import (
    ATTACHMENT_PREPARE_VIDEO,
    ATTACHMENTS_SANITIZE,
    finalize_attachment_creation,
    sanitize_user_attachments,
)
from media_backend.services.job_manager import JobManager
from media_backend.services.pipeline import MediaPipeline

logger = logging.getLogger(__name__)

__all__ = ["ATTACHMENT_PREPARE_VIDEO", "ATTACHMENTS_SANITIZE", "init_handlers"]


def init_handlers(manager: JobManager, pipeline: MediaPipeline) -> None:
    # Transcoding is heavy: one video at a time.
    manager.limited_jobs[ATTACHMENT_PREPARE_VIDEO] = 1

    async def prepare_video(job: Job) -> None:
        attachment_id = str(job.payload["attId"])
        file_path = str(job.payload["filePath"])
        async with session_scope() as session:
            await finalize_attachment_creation(
                session, pipeline, attachment_id=attachment_id, file_path=file_path
            )
        return None

    async def sanitize_attachments(job: Job) -> float | None:
        user_id = int(job.payload["userId"])
        batch_size = pipeline.settings.job_batch_size
        async with session_scope() as session:
            handled = await sanitize_user_attachments(
                session, pipeline, user_id=user_id, batch_size=batch_size
            )
        if handled >= batch_size:
            # More to do; continue with the next batch right away.
            return 0
        logger.info("all attachments of user %s are sanitized", user_id)
        return None

    manager.on(ATTACHMENT_PREPARE_VIDEO, prepare_video)
    manager.on(ATTACHMENTS_SANITIZE, sanitize_attachments)

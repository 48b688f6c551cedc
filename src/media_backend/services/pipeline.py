from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

from media_backend.config import Settings, settings
from media_backend.events import EventBus, InProcessEventBus
from media_backend.integrations.storage.object_storage import (
    ObjectStorage,
    build_object_storage,
)
from media_backend.locks import KeyedLocks
from media_backend.media.process import MediaProcessor
from media_backend.media.sanitize import MetadataSanitizer


@dataclass
class MediaPipeline:
    """Collaborators shared by the attachment services and job handlers."""

    settings: Settings
    storage: ObjectStorage
    processor: MediaProcessor
    sanitizer: MetadataSanitizer
    events: EventBus
    locks: KeyedLocks = field(default_factory=KeyedLocks)


def build_media_pipeline(cfg: Settings, *, events: EventBus | None = None) -> MediaPipeline:
    return MediaPipeline(
        settings=cfg,
        storage=build_object_storage(cfg.storage_config()),
        processor=MediaProcessor.from_settings(cfg),
        sanitizer=MetadataSanitizer(
            remove_tags=cfg.sanitize_remove_tags,
            ignore_tags=cfg.sanitize_ignore_tags,
            tool_timeout=cfg.media_tool_timeout_seconds,
        ),
        events=events or InProcessEventBus(),
    )


@lru_cache(maxsize=1)
def get_media_pipeline() -> MediaPipeline:
    return build_media_pipeline(settings)

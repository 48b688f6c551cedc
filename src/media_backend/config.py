from __future__ import annotations

import tempfile
from dataclasses import dataclass
from typing import ClassVar, final

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class LocalStorageConfig:
    root_dir: str


@dataclass(frozen=True)
class S3StorageConfig:
    bucket: str
    endpoint_url: str
    region: str
    access_key_id: str
    secret_access_key: str
    force_path_style: bool = False
    acl: str = "public-read"


StorageConfig = LocalStorageConfig | S3StorageConfig


def _default_image_preview_sizes() -> dict[str, tuple[int, int]]:
    return {"thumbnails": (525, 175), "thumbnails2": (1050, 350)}


def _default_video_preview_short_sides() -> dict[str, int]:
    return {"v1": 480, "v2": 720, "v3": 1080}


def _default_size_limits() -> dict[str, int]:
    return {"default": 10 * 1024 * 1024, "video": 100 * 1024 * 1024}


def _default_remove_tags() -> list[str]:
    return [
        r"^GPS",
        r"SerialNumber$",
        r"^Owner",
        r"^Location",
        r"^City$",
        r"^Country",
        r"^Province",
        r"^Sub-?location",
    ]


def _default_inline_mime_types() -> list[str]:
    return [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/avif",
        "audio/mpeg",
        "audio/mp4",
        "audio/ogg",
        "video/mp4",
        "video/webm",
        "text/plain",
    ]


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Media Backend"
    api_prefix: str = "/api/v1"

    # Environment (ENVIRONMENT): development | production
    environment: str = "development"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./.data/dev.db"

    # Storage: "fs" (local directory) or "s3" (S3-compatible object storage)
    attachments_storage_type: str = "fs"
    attachments_local_dir: str = ".data/media"
    # Logical key prefix; keys look like {attachments_path}{variant/}{id}.{ext}
    attachments_path: str = "attachments/"
    attachments_url: str = "http://localhost:8000/media/"

    s3_endpoint_url: str = ""
    s3_region: str = ""
    s3_bucket: str = ""
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_force_path_style: bool = False
    s3_acl: str = "public-read"

    # Limits
    attachments_max_size_bytes: int = 100 * 1024 * 1024
    attachments_size_limit_by_type: dict[str, int] = Field(default_factory=_default_size_limits)
    # Concurrent in-progress (deferred) attachments per user
    user_media_processing_limit: int = 5

    # Processing
    image_preview_sizes: dict[str, tuple[int, int]] = Field(
        default_factory=_default_image_preview_sizes
    )
    image_preview_quality: int = 75
    video_preview_short_sides: dict[str, int] = Field(
        default_factory=_default_video_preview_short_sides
    )
    media_tool_timeout_seconds: float = 600.0
    # If set, originals of deferred uploads are moved here so that workers on
    # other hosts can reach them.
    shared_media_dir: str = ""
    attachments_tmp_dir: str = Field(default_factory=tempfile.gettempdir)
    tmp_file_max_age_seconds: int = 60 * 60 * 24

    # Metadata sanitizing (regular expressions matched against tag names)
    sanitize_remove_tags: list[str] = Field(default_factory=_default_remove_tags)
    sanitize_ignore_tags: list[str] = Field(default_factory=list)

    inline_mime_types: list[str] = Field(default_factory=_default_inline_mime_types)

    # Job queue
    job_poll_interval_seconds: float = 5.0
    job_lock_seconds: int = 120
    job_batch_size: int = 10

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        if self.environment.strip().lower() != "production":
            return self

        errors: list[str] = []

        if self.attachments_storage_type.strip().lower() == "s3":
            s3_fields = {
                "S3_BUCKET": self.s3_bucket.strip(),
                "S3_ENDPOINT_URL": self.s3_endpoint_url.strip(),
                "S3_ACCESS_KEY_ID": self.s3_access_key_id.strip(),
                "S3_SECRET_ACCESS_KEY": self.s3_secret_access_key.strip(),
            }
            if any(not v for v in s3_fields.values()):
                missing = ",".join([k for k, v in s3_fields.items() if not v])
                errors.append(f"S3 config incomplete in production; missing: {missing}")

        if not self.attachments_url.strip():
            errors.append("ATTACHMENTS_URL must be set in production")

        if errors:
            raise ValueError("Invalid production settings: " + "; ".join(errors))
        return self

    def s3_config_complete(self) -> bool:
        return bool(
            self.s3_bucket.strip()
            and self.s3_endpoint_url.strip()
            and self.s3_access_key_id.strip()
            and self.s3_secret_access_key.strip()
        )

    def storage_config(self) -> StorageConfig:
        # Default to local storage when S3 config is incomplete.
        if self.attachments_storage_type.strip().lower() == "s3" and self.s3_config_complete():
            return S3StorageConfig(
                bucket=self.s3_bucket,
                endpoint_url=self.s3_endpoint_url,
                region=self.s3_region,
                access_key_id=self.s3_access_key_id,
                secret_access_key=self.s3_secret_access_key,
                force_path_style=self.s3_force_path_style,
                acl=self.s3_acl,
            )
        return LocalStorageConfig(root_dir=self.attachments_local_dir)

    def size_limit_for(self, media_type: str) -> int:
        limits = self.attachments_size_limit_by_type
        return int(limits.get(media_type, limits.get("default", self.attachments_max_size_bytes)))


settings = Settings()

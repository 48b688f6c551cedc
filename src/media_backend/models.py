# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, Text, UniqueConstraint
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    __tablename__ = "users"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True, min_length=1, max_length=64)
    # Bearer token used by the API.
    token: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True, unique=True))

    # User preference: strip privacy-sensitive metadata from uploaded media.
    sanitize_media_metadata: bool = Field(default=True)

    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)


class Post(SQLModel, table=True):
    __tablename__ = "posts"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(primary_key=True, min_length=1, max_length=36)
    user_id: int = Field(index=True, foreign_key="users.id")
    body: str = Field(default="", sa_column=Column(Text, nullable=False))

    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now, index=True)


class Attachment(SQLModel, table=True):
    __tablename__ = "attachments"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(primary_key=True, min_length=1, max_length=36)
    user_id: int = Field(index=True, foreign_key="users.id")
    post_id: Optional[str] = Field(default=None, index=True, foreign_key="posts.id")

    # image | audio | video | general
    media_type: str = Field(default="general", max_length=16, index=True)
    mime_type: str = Field(default="application/octet-stream", max_length=255)
    # Extension of the "" variant; empty for unrecognized types.
    file_extension: str = Field(default="", max_length=16, index=True)

    # Display-only, as supplied by the uploader.
    file_name: str = Field(default="", max_length=255)
    file_size: int = Field(default=0)

    width: Optional[int] = Field(default=None)
    height: Optional[int] = Field(default=None)
    duration: Optional[float] = Field(default=None)

    # {kind: {variant: {w, h, ext}}}; "" is the original.
    previews: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(SAJSON))
    meta: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(SAJSON))
    # Mirrors meta.inProgress so that the quota count is a plain indexed query.
    in_progress: bool = Field(default=False, index=True)

    # 0: never sanitized; otherwise the sanitizer version.
    sanitized: int = Field(default=0, index=True)

    # Legacy shape, read through domain.attachment.load_attachment only.
    image_sizes: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(SAJSON))
    title: Optional[str] = Field(default=None, max_length=255)
    artist: Optional[str] = Field(default=None, max_length=255)

    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now, index=True)


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]
    __table_args__ = (UniqueConstraint("name", "uniq_key", name="uq_jobs_name_uniq_key"),)

    id: str = Field(primary_key=True, min_length=1, max_length=36)
    name: str = Field(index=True, min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    # At most one pending job per (name, uniq_key).
    uniq_key: Optional[str] = Field(default=None, max_length=128)

    # A job is due when unlock_at <= now; claiming it pushes unlock_at forward.
    unlock_at: datetime = Field(default_factory=utc_now, index=True)
    attempts: int = Field(default=0)
    failures: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now, index=True)

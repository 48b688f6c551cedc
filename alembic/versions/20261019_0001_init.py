"""init schema (users + posts + attachments + jobs)

Revision ID: 20261019_0001
Revises: None
Create Date: 2026-10-19 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def upgrade() -> None:
    if not _table_exists("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("username", sa.String(length=64), nullable=False),
            sa.Column("token", sa.Text(), nullable=True, unique=True),
            sa.Column(
                "sanitize_media_metadata",
                sa.Boolean(),
                nullable=False,
                server_default=sa.text("true"),
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index("ix_users_username", "users", ["username"], unique=True)
        op.create_index("ix_users_is_active", "users", ["is_active"], unique=False)
        op.create_index("ix_users_created_at", "users", ["created_at"], unique=False)

    if not _table_exists("posts"):
        op.create_table(
            "posts",
            sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("body", sa.Text(), nullable=False, server_default=""),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index("ix_posts_user_id", "posts", ["user_id"], unique=False)
        op.create_index("ix_posts_created_at", "posts", ["created_at"], unique=False)
        op.create_index("ix_posts_updated_at", "posts", ["updated_at"], unique=False)

    if not _table_exists("attachments"):
        op.create_table(
            "attachments",
            sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("post_id", sa.String(length=36), sa.ForeignKey("posts.id"), nullable=True),
            sa.Column("media_type", sa.String(length=16), nullable=False),
            sa.Column("mime_type", sa.String(length=255), nullable=False),
            sa.Column("file_extension", sa.String(length=16), nullable=False),
            sa.Column("file_name", sa.String(length=255), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=False),
            sa.Column("width", sa.Integer(), nullable=True),
            sa.Column("height", sa.Integer(), nullable=True),
            sa.Column("duration", sa.Float(), nullable=True),
            sa.Column("previews", sa.JSON(), nullable=True),
            sa.Column("meta", sa.JSON(), nullable=True),
            sa.Column("in_progress", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("sanitized", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("image_sizes", sa.JSON(), nullable=True),
            sa.Column("title", sa.String(length=255), nullable=True),
            sa.Column("artist", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index("ix_attachments_user_id", "attachments", ["user_id"], unique=False)
        op.create_index("ix_attachments_post_id", "attachments", ["post_id"], unique=False)
        op.create_index("ix_attachments_media_type", "attachments", ["media_type"], unique=False)
        op.create_index(
            "ix_attachments_file_extension", "attachments", ["file_extension"], unique=False
        )
        op.create_index("ix_attachments_in_progress", "attachments", ["in_progress"], unique=False)
        op.create_index("ix_attachments_sanitized", "attachments", ["sanitized"], unique=False)
        op.create_index("ix_attachments_created_at", "attachments", ["created_at"], unique=False)
        op.create_index("ix_attachments_updated_at", "attachments", ["updated_at"], unique=False)

    if not _table_exists("jobs"):
        op.create_table(
            "jobs",
            sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=64), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("uniq_key", sa.String(length=128), nullable=True),
            sa.Column("unlock_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("failures", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("name", "uniq_key", name="uq_jobs_name_uniq_key"),
        )
        op.create_index("ix_jobs_name", "jobs", ["name"], unique=False)
        op.create_index("ix_jobs_unlock_at", "jobs", ["unlock_at"], unique=False)
        op.create_index("ix_jobs_created_at", "jobs", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_table("jobs")
    op.drop_table("attachments")
    op.drop_table("posts")
    op.drop_table("users")

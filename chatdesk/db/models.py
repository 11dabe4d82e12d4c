"""SQLAlchemy table definitions for the chat backend."""

from __future__ import annotations

import sqlalchemy as sa


metadata = sa.MetaData()

users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("username", sa.Text, nullable=False, unique=True),
    sa.Column("password_hash", sa.Text, nullable=False),
    sa.Column("is_admin", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.Column("domain", sa.Text),
    sa.Column("practice_area", sa.Text),
    sa.Column("onboarding_completed", sa.Integer, nullable=False, server_default=sa.text("0")),
    sqlite_autoincrement=True,
)

sessions = sa.Table(
    "sessions",
    metadata,
    sa.Column("id", sa.Text, primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.Column("expires_at", sa.Float, nullable=False),
    sa.Column("last_accessed", sa.Float, nullable=False),
    sa.Column("ip_address", sa.Text),
    sa.Column("user_agent", sa.Text),
)
sa.Index("idx_sessions_user", sessions.c.user_id)

messages = sa.Table(
    "messages",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("thread_id", sa.Text, nullable=False),
    sa.Column("domain", sa.Text, nullable=False),
    sa.Column("role", sa.Text, nullable=False),
    sa.Column("content", sa.Text, nullable=False),
    sa.Column("content_type", sa.Text, nullable=False, server_default=sa.text("'text'")),
    sa.Column("sub_feature_id", sa.Text),
    sa.Column("metadata", sa.Text),
    sa.Column("timestamp", sa.Integer, nullable=False),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id")),
    sqlite_autoincrement=True,
)
sa.Index("idx_messages_thread", messages.c.thread_id, messages.c.id)

system_prompts = sa.Table(
    "system_prompts",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("domain", sa.Text, nullable=False),
    sa.Column("prompt", sa.Text, nullable=False),
    sa.Column("sub_feature_id", sa.Text),
    sa.Column("is_global", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("updated_at", sa.Integer, nullable=False),
    sqlite_autoincrement=True,
)
sa.Index("idx_system_prompts_domain", system_prompts.c.domain, system_prompts.c.sub_feature_id)

files = sa.Table(
    "files",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("name", sa.Text, nullable=False),
    sa.Column("content", sa.Text, nullable=False),
    sa.Column("file_type", sa.Text, nullable=False),
    sa.Column("domain", sa.Text, nullable=False),
    sa.Column("sub_feature_id", sa.Text),
    sa.Column("size", sa.Integer, nullable=False),
    sa.Column("is_admin_only", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("created_at", sa.Integer, nullable=False),
    sa.Column("uploaded_by", sa.Text, nullable=False),
    sqlite_autoincrement=True,
)
sa.Index("idx_files_domain", files.c.domain)


def create_tables(engine: sa.engine.Engine) -> None:
    """Create every table that does not exist yet."""

    metadata.create_all(engine)


__all__ = [
    "metadata",
    "users",
    "sessions",
    "messages",
    "system_prompts",
    "files",
    "create_tables",
]

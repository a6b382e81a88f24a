"""
SQLAlchemy ORM Models for TinyPivot

Pure database models using SQLAlchemy 2.0 declarative style.

For API schemas (Create/Update/Public), see models.py
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Index, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


# =============================================================================
# Datasource
# =============================================================================


class Datasource(Base):
    """User-tier datasource catalog table.

    Organization datasources are never stored here.
    """
    __tablename__ = "tinypivot_datasources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(50))
    description: Mapped[str | None] = mapped_column(Text, default=None)
    tier: Mapped[str] = mapped_column(String(10), default="user", server_default="user")
    env_prefix: Mapped[str | None] = mapped_column(String(100), default=None)
    connection_config: Mapped[dict] = mapped_column(
        JSONB, default=dict, server_default=text("'{}'::jsonb")
    )

    # Encrypted credentials (AES-256-GCM, hex encoded)
    encrypted_credentials: Mapped[str | None] = mapped_column(Text, default=None)
    credentials_iv: Mapped[str | None] = mapped_column(String(32), default=None)
    credentials_auth_tag: Mapped[str | None] = mapped_column(String(32), default=None)
    credentials_salt: Mapped[str | None] = mapped_column(String(32), default=None)

    # Encrypted OAuth refresh token
    encrypted_refresh_token: Mapped[str | None] = mapped_column(Text, default=None)
    refresh_token_iv: Mapped[str | None] = mapped_column(String(32), default=None)
    refresh_token_auth_tag: Mapped[str | None] = mapped_column(String(32), default=None)
    refresh_token_salt: Mapped[str | None] = mapped_column(String(32), default=None)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    auth_method: Mapped[str] = mapped_column(
        String(20), default="password", server_default="password"
    )
    user_id: Mapped[str | None] = mapped_column(String(255), default=None)

    last_tested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_test_result: Mapped[str | None] = mapped_column(String(20), default=None)
    last_test_error: Mapped[str | None] = mapped_column(Text, default=None)

    active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=text("NOW()"),
        onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_tinypivot_datasources_user_id", "user_id"),
        Index("ix_tinypivot_datasources_type", "type"),
        Index("ix_tinypivot_datasources_tier", "tier"),
        Index("ix_tinypivot_datasources_active", "active"),
    )

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere so the schema also builds on SQLite.
JsonType = JSON().with_variant(JSONB(), "postgresql")

TENANT_STATUS_ACTIVE = "active"
TENANT_STATUS_SUSPENDED = "suspended"

FILE_KIND_FILE = "file"
FILE_KIND_FOLDER = "folder"

ALERT_EGRESS_WARNING = "egress_warning"
ALERT_EGRESS_LIMIT = "egress_limit"
ALERT_STORAGE_WARNING = "storage_warning"
ALERT_STORAGE_LIMIT = "storage_limit"


class Base(DeclarativeBase):
    # Load server-generated timestamps during flush; async sessions cannot lazy-load them afterwards.
    __mapper_args__ = {"eager_defaults": True}


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String, unique=True)
    company: Mapped[str | None] = mapped_column(String, nullable=True)
    storage_quota_gb: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("100.00"))
    # Cached aggregate of confirmed, live file sizes; recalculated, never incremented.
    storage_used_gb: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    egress_free_limit_gb: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("2048.00"))
    status: Mapped[str] = mapped_column(String, default=TENANT_STATUS_ACTIVE, index=True)
    # Key prefix used when the storage config does not define a bucket prefix.
    path_prefix: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    last_active_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class StorageConfig(Base):
    __tablename__ = "tenant_storage_configs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), unique=True, index=True
    )
    bucket_name: Mapped[str] = mapped_column(String)
    endpoint: Mapped[str] = mapped_column(String)
    region: Mapped[str] = mapped_column(String)
    access_key_id: Mapped[str] = mapped_column(Text)
    secret_access_key: Mapped[str] = mapped_column(Text)
    # Optional prefix when several tenants share one bucket.
    bucket_prefix: Mapped[str | None] = mapped_column(String, nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class FileRecord(Base):
    __tablename__ = "files"
    __table_args__ = (
        Index("ix_files_tenant_deleted", "tenant_id", "deleted_at"),
        Index("ix_files_parent", "parent_id"),
        # At most one live entry per logical path and per storage key within a tenant.
        Index(
            "uq_files_tenant_live_path",
            "tenant_id",
            "path",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index(
            "uq_files_tenant_live_storage_key",
            "tenant_id",
            "storage_key",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND storage_key IS NOT NULL"),
            sqlite_where=text("deleted_at IS NULL AND storage_key IS NOT NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    kind: Mapped[str] = mapped_column(String)
    mime_type: Mapped[str | None] = mapped_column(String, nullable=True)
    # Slash-joined logical path from the tenant root, e.g. "docs/2026/report.pdf".
    path: Mapped[str] = mapped_column(Text)
    parent_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("files.id", ondelete="CASCADE"), nullable=True
    )
    # Reserved when the upload is authorized; folders never carry one.
    storage_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    etag: Mapped[str | None] = mapped_column(String, nullable=True)
    # Only confirmed, live files count toward storage usage.
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    modified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class EgressRecord(Base):
    __tablename__ = "egress_usage"
    __table_args__ = (
        UniqueConstraint("tenant_id", "month_key", name="uq_egress_usage_tenant_month"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    # Calendar month bucket formatted as YYYY-MM (UTC).
    month_key: Mapped[str] = mapped_column(String(7))
    egress_used_gb: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_scope_created", "tenant_id", "kind", "threshold_percent", "created_at"),
        Index("ix_alerts_tenant_unread", "tenant_id", "is_read"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    kind: Mapped[str] = mapped_column(String)
    threshold_percent: Mapped[int] = mapped_column(BigInteger)
    message: Mapped[str] = mapped_column(Text)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_dismissed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value_json: Mapped[Any] = mapped_column(JsonType)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DownloadHistory(Base):
    __tablename__ = "download_history"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    file_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("files.id", ondelete="SET NULL"), nullable=True, index=True
    )
    file_name: Mapped[str] = mapped_column(String)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String, default="completed")
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    downloaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("ix_activity_logs_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AccessSession(Base):
    __tablename__ = "access_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Store only the token hash so a database leak does not expose bearer tokens.
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    subject_id: Mapped[str] = mapped_column(String)
    # Null for platform admins that are not bound to a tenant.
    tenant_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True, index=True
    )
    role: Mapped[str] = mapped_column(String)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

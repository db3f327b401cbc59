"""Sync bookkeeping models: durable cursors and per-hospital run audit."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from passport_sync.models.base import Base


class SyncCursor(Base):
    """Per-hospital, per-variant watermark of the last ingested observation."""

    __tablename__ = "sync_cursors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    hospital_id: Mapped[str] = mapped_column(String(100), nullable=False)
    variant: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="multi_hospital|direct_db|rest_api"
    )
    marker_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    marker_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    marker_ref: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="Tie-break id for timestamp markers"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("hospital_id", "variant", name="uq_sync_cursors_hospital_variant"),
    )


class SyncRun(Base):
    """Audit row written after each hospital cycle."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    hospital_id: Mapped[str] = mapped_column(String(100), nullable=False)
    variant: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger: Mapped[str] = mapped_column(
        String(16), nullable=False, default="timer", comment="timer|manual"
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    fetched: Mapped[int] = mapped_column(default=0, nullable=False)
    created: Mapped[int] = mapped_column(default=0, nullable=False)
    duplicates: Mapped[int] = mapped_column(default=0, nullable=False)
    skipped: Mapped[int] = mapped_column(default=0, nullable=False)
    failed: Mapped[int] = mapped_column(default=0, nullable=False)
    marker_before: Mapped[str | None] = mapped_column(String(100), nullable=True)
    marker_after: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_sync_runs_hospital_started", "hospital_id", "started_at"),
    )

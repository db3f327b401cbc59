from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import Mapped, mapped_column, relationship

from passport_sync.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from passport_sync.models.patient import Patient


class MedicalRecord(Base, TimestampMixin):
    """A patient record, either synced from a source EMR or entered manually.

    Records produced by sync carry ``source_obs_id`` and ``arrival_at``; those
    without ``arrival_at`` are legacy/manual records and are always editable.
    """

    __tablename__ = "medical_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    record_type: Mapped[str] = mapped_column(
        String(20), nullable=False, index=True, comment="condition|medication|test|visit"
    )
    data: Mapped[dict[str, Any]] = mapped_column(
        MutableDict.as_mutable(JSON), nullable=False, default=dict
    )
    created_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    hospital_scope: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source_obs_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_person_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    arrival_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When sync wrote the record; drives the access window",
    )
    editable_by: Mapped[list[int]] = mapped_column(
        MutableList.as_mutable(JSON), nullable=False, default=list
    )

    # Dedup natural key, set only by the record writer
    natural_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    natural_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    patient: Mapped["Patient"] = relationship(back_populates="records")

    __table_args__ = (
        UniqueConstraint(
            "hospital_scope",
            "source_obs_id",
            name="uq_medical_records_hospital_source_obs",
        ),
        Index(
            "ix_medical_records_natural_key",
            "patient_id",
            "record_type",
            "natural_name",
            "natural_date",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<MedicalRecord(id={self.id}, patient_id={self.patient_id}, "
            f"type='{self.record_type}', source_obs_id={self.source_obs_id})>"
        )

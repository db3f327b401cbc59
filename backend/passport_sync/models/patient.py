from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, ForeignKey, String, Text, and_
from sqlalchemy.orm import Mapped, foreign, mapped_column, relationship

from passport_sync.models.base import Base, TimestampMixin
from passport_sync.models.medical_record import MedicalRecord

if TYPE_CHECKING:
    from passport_sync.models.user import User


def _typed_records(record_type: str):
    return relationship(
        MedicalRecord,
        primaryjoin=lambda: and_(
            foreign(MedicalRecord.patient_id) == Patient.id,
            MedicalRecord.record_type == record_type,
        ),
        viewonly=True,
        order_by=MedicalRecord.id,
    )


class Patient(Base, TimestampMixin):
    """Destination patient identity keyed by a durable national identifier."""

    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    national_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        index=True,
        nullable=False,
        comment="National ID, or OPENMRS_<hospital>_<person> placeholder",
    )
    external_ref: Mapped[str | None] = mapped_column(
        String(150),
        unique=True,
        index=True,
        nullable=True,
        comment="Cached <hospital_id>:<source_person_id> for fast re-resolution",
    )

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    middle_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)

    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    province: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)

    is_auto_registered: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    user: Mapped["User"] = relationship(lazy="joined")
    records: Mapped[list[MedicalRecord]] = relationship(
        back_populates="patient", cascade="all, delete-orphan"
    )

    # Type-specific collections
    conditions: Mapped[list[MedicalRecord]] = _typed_records("condition")
    medications: Mapped[list[MedicalRecord]] = _typed_records("medication")
    test_results: Mapped[list[MedicalRecord]] = _typed_records("test")
    hospital_visits: Mapped[list[MedicalRecord]] = _typed_records("visit")

    @property
    def full_name(self) -> str:
        """Return the patient's full name."""
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(part for part in parts if part)

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, name='{self.full_name}')>"

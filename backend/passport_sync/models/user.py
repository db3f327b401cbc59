from enum import StrEnum

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from passport_sync.models.base import Base, TimestampMixin


class UserRole(StrEnum):
    patient = "patient"
    doctor = "doctor"
    hospital = "hospital"


class User(Base, TimestampMixin):
    """Login identity behind patients, doctors and hospitals."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
        comment="User email address",
    )

    hashed_password: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="PBKDF2-SHA256 hashed password"
    )

    full_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=UserRole.patient.value,
        server_default="patient",
        comment="User role: patient, doctor, hospital",
    )

    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    is_email_verified: Mapped[bool] = mapped_column(nullable=False, default=False)

    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"

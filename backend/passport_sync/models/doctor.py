from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from passport_sync.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from passport_sync.models.user import User


class Doctor(Base, TimestampMixin):
    """Doctor record linked to a login identity and a hospital."""

    __tablename__ = "doctors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    license_number: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    provider_identifier: Mapped[str | None] = mapped_column(
        String(100), nullable=True, index=True, comment="OpenMRS provider identifier"
    )
    specialization: Mapped[str | None] = mapped_column(String(100), nullable=True)
    hospital_id: Mapped[int | None] = mapped_column(
        ForeignKey("hospitals.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_placeholder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    user: Mapped["User"] = relationship(lazy="joined")

    def __repr__(self) -> str:
        return f"<Doctor(id={self.id}, license='{self.license_number}')>"

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, func, inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all destination-store models."""


class TimestampMixin:
    """Adds created/updated timestamps maintained by the database."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


def model_to_dict(instance: Base) -> dict[str, Any]:
    """Serialize mapped column attributes of a model instance."""
    mapper = inspect(instance).mapper
    return {column.key: getattr(instance, column.key) for column in mapper.column_attrs}

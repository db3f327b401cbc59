"""Baseline schema: identities, medical records and sync bookkeeping.

Revision ID: 20261018_00
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op

from passport_sync.models import Base


revision = "20261018_00"
down_revision = None
branch_labels = None
depends_on = None

TABLES = (
    "users",
    "hospitals",
    "patients",
    "doctors",
    "medical_records",
    "sync_cursors",
    "sync_runs",
)


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(
        bind=bind,
        tables=[Base.metadata.tables[name] for name in TABLES],
    )


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(
        bind=bind,
        tables=[Base.metadata.tables[name] for name in reversed(TABLES)],
    )

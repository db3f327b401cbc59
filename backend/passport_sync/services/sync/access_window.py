"""Post-sync edit window for synced records.

Elapsed time since ``arrival_at`` decides the state:

- legacy: no ``arrival_at``; always editable, status left as stored
- fresh: under the fresh window; editable by anyone, medication Active
- aging: fresh to lock window inclusive; author or granted editors only,
  medication Past
- locked: past the lock window; nobody edits, medication Past

Evaluation is pure. Only :meth:`AccessWindowPolicy.reconcile_medication_status`
and :meth:`AccessWindowPolicy.grant_edit_access` persist anything.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from passport_sync.config import settings
from passport_sync.exceptions import AccessWindowClosed
from passport_sync.services.sync.types import RecordType, ensure_utc

ACTIVE = "Active"
PAST = "Past"


class WindowState(StrEnum):
    legacy = "legacy"
    fresh = "fresh"
    aging = "aging"
    locked = "locked"


class RecordStore(Protocol):
    async def save_record(self, record: Any) -> Any:
        ...


@dataclass(frozen=True)
class AccessEvaluation:
    state: WindowState
    is_editable: bool
    hours_since_sync: float | None
    medication_status: str | None
    restricted: bool


@dataclass(frozen=True)
class EditInfo:
    can_edit: bool
    is_editable: bool
    hours_since_sync: float | None
    medication_status: str | None
    reason: str
    state: WindowState
    arrival_at: datetime | None = None
    editable_by: list[int] = field(default_factory=list)


def _stored_status(record: Any) -> str | None:
    data = getattr(record, "data", None) or {}
    return data.get("medicationStatus")


class AccessWindowPolicy:
    """Evaluate the edit window with an injectable clock."""

    def __init__(
        self,
        fresh_hours: float | None = None,
        lock_hours: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.fresh_hours = (
            settings.access_window_fresh_hours if fresh_hours is None else fresh_hours
        )
        self.lock_hours = settings.access_window_lock_hours if lock_hours is None else lock_hours
        if self.lock_hours <= self.fresh_hours:
            raise ValueError("lock_hours must be greater than fresh_hours")
        self.clock = clock or (lambda: datetime.now(UTC))

    def _now(self, now: datetime | None) -> datetime:
        return ensure_utc(now or self.clock())

    def evaluate(self, record: Any, now: datetime | None = None) -> AccessEvaluation:
        arrival_at = ensure_utc(getattr(record, "arrival_at", None))
        is_medication = getattr(record, "record_type", None) == RecordType.medication.value
        if arrival_at is None:
            return AccessEvaluation(
                state=WindowState.legacy,
                is_editable=True,
                hours_since_sync=None,
                medication_status=_stored_status(record) if is_medication else None,
                restricted=False,
            )

        hours = (self._now(now) - arrival_at).total_seconds() / 3600
        if hours < self.fresh_hours:
            state, editable, status = WindowState.fresh, True, ACTIVE
        elif hours <= self.lock_hours:
            state, editable, status = WindowState.aging, True, PAST
        else:
            state, editable, status = WindowState.locked, False, PAST
        return AccessEvaluation(
            state=state,
            is_editable=editable,
            hours_since_sync=round(hours, 4),
            medication_status=status if is_medication else None,
            restricted=state == WindowState.aging,
        )

    def can_edit(self, record: Any, actor_id: int | None, now: datetime | None = None) -> bool:
        evaluation = self.evaluate(record, now)
        if evaluation.state in (WindowState.legacy, WindowState.fresh):
            return True
        if evaluation.state == WindowState.locked:
            return False
        if actor_id is None:
            return False
        allowed = set(getattr(record, "editable_by", None) or [])
        author = getattr(record, "created_by_user_id", None)
        if author is not None:
            allowed.add(author)
        return actor_id in allowed

    def _reason(self, evaluation: AccessEvaluation, can_edit: bool) -> str:
        fresh = f"{self.fresh_hours:g}"
        lock = f"{self.lock_hours:g}"
        if evaluation.state == WindowState.legacy:
            return "Record was not synced; the edit window does not apply"
        if evaluation.state == WindowState.fresh:
            return f"Within {fresh} hours of sync; editable by any authorized user"
        if evaluation.state == WindowState.locked:
            return f"More than {lock} hours since sync; record is locked"
        if can_edit:
            return f"Between {fresh} and {lock} hours of sync; editable by the author or granted editors"
        return f"Between {fresh} and {lock} hours of sync; only the author or granted editors may edit"

    def get_edit_info(
        self, record: Any, actor_id: int | None, now: datetime | None = None
    ) -> EditInfo:
        now = self._now(now)
        evaluation = self.evaluate(record, now)
        allowed = self.can_edit(record, actor_id, now)
        return EditInfo(
            can_edit=allowed,
            is_editable=evaluation.is_editable,
            hours_since_sync=evaluation.hours_since_sync,
            medication_status=evaluation.medication_status,
            reason=self._reason(evaluation, allowed),
            state=evaluation.state,
            arrival_at=ensure_utc(getattr(record, "arrival_at", None)),
            editable_by=list(getattr(record, "editable_by", None) or []),
        )

    async def reconcile_medication_status(
        self, record: Any, store: RecordStore, now: datetime | None = None
    ) -> bool:
        """Persist the computed medication status if it differs from the stored one."""
        evaluation = self.evaluate(record, now)
        if evaluation.state == WindowState.legacy or evaluation.medication_status is None:
            return False
        if _stored_status(record) == evaluation.medication_status:
            return False
        data = dict(record.data or {})
        data["medicationStatus"] = evaluation.medication_status
        record.data = data
        await store.save_record(record)
        return True

    async def grant_edit_access(
        self, record: Any, actor_id: int, store: RecordStore, now: datetime | None = None
    ) -> bool:
        """Add ``actor_id`` to ``editable_by``; returns False if already present."""
        evaluation = self.evaluate(record, now)
        if evaluation.state == WindowState.locked:
            raise AccessWindowClosed(getattr(record, "id", None))
        editors = list(getattr(record, "editable_by", None) or [])
        if actor_id in editors:
            return False
        record.editable_by = [*editors, actor_id]
        await store.save_record(record)
        return True


def evaluate(record: Any, now: datetime | None = None) -> AccessEvaluation:
    return AccessWindowPolicy().evaluate(record, now)


def can_edit(record: Any, actor_id: int | None, now: datetime | None = None) -> bool:
    return AccessWindowPolicy().can_edit(record, actor_id, now)


def get_edit_info(record: Any, actor_id: int | None, now: datetime | None = None) -> EditInfo:
    return AccessWindowPolicy().get_edit_info(record, actor_id, now)

from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import NOW
from passport_sync.exceptions import AccessWindowClosed
from passport_sync.models import MedicalRecord
from passport_sync.services.sync.access_window import (
    AccessWindowPolicy,
    WindowState,
)


class RecordingStore:
    def __init__(self):
        self.saved = []

    async def save_record(self, record):
        self.saved.append(record)
        return record


def _record(hours_ago=None, record_type="medication", **kwargs):
    arrival_at = NOW - timedelta(hours=hours_ago) if hours_ago is not None else None
    kwargs.setdefault("data", {"medicationStatus": "Active"})
    return SimpleNamespace(
        id=kwargs.pop("id", 10),
        record_type=record_type,
        arrival_at=arrival_at,
        created_by_user_id=kwargs.pop("created_by_user_id", 5),
        editable_by=kwargs.pop("editable_by", []),
        **kwargs,
    )


@pytest.fixture()
def policy():
    return AccessWindowPolicy(2, 3, clock=lambda: NOW)


@pytest.mark.parametrize(
    ("hours", "state", "editable", "status"),
    [
        (0, WindowState.fresh, True, "Active"),
        (1.99, WindowState.fresh, True, "Active"),
        (2, WindowState.aging, True, "Past"),
        (3, WindowState.aging, True, "Past"),
        (3.01, WindowState.locked, False, "Past"),
    ],
)
def test_window_boundaries(policy, hours, state, editable, status):
    evaluation = policy.evaluate(_record(hours))

    assert evaluation.state == state
    assert evaluation.is_editable is editable
    assert evaluation.medication_status == status
    assert evaluation.hours_since_sync == pytest.approx(hours)
    assert evaluation.restricted is (state == WindowState.aging)


def test_legacy_record_is_always_editable(policy):
    record = _record(None, data={"medicationStatus": "Past"})

    evaluation = policy.evaluate(record)
    assert evaluation.state == WindowState.legacy
    assert evaluation.hours_since_sync is None
    assert evaluation.medication_status == "Past"
    assert policy.can_edit(record, None) is True


def test_model_record_without_arrival_is_legacy(policy):
    record = MedicalRecord(
        id=11, record_type="medication", data={"medicationStatus": "Active"}, editable_by=[]
    )

    assert policy.evaluate(record).state == WindowState.legacy
    assert policy.can_edit(record, 99) is True


def test_non_medication_records_have_no_status(policy):
    assert policy.evaluate(_record(0.5, record_type="condition")).medication_status is None


def test_fresh_record_editable_by_anyone(policy):
    assert policy.can_edit(_record(1), actor_id=999) is True
    assert policy.can_edit(_record(1), actor_id=None) is True


def test_aging_record_restricted_to_author_and_editors(policy):
    record = _record(2.5, editable_by=[7])

    assert policy.can_edit(record, 5) is True
    assert policy.can_edit(record, 7) is True
    assert policy.can_edit(record, 8) is False
    assert policy.can_edit(record, None) is False


def test_locked_record_not_editable_by_author(policy):
    assert policy.can_edit(_record(4), 5) is False


def test_edit_info_explains_decision(policy):
    info = policy.get_edit_info(_record(2.5), 8)

    assert info.can_edit is False
    assert info.is_editable is True
    assert info.state == WindowState.aging
    assert info.medication_status == "Past"
    assert "author or granted editors" in info.reason
    assert info.arrival_at == NOW - timedelta(hours=2.5)


def test_naive_arrival_is_treated_as_utc(policy):
    record = _record(1)
    record.arrival_at = record.arrival_at.replace(tzinfo=None)

    assert policy.evaluate(record).state == WindowState.fresh


@pytest.mark.anyio
async def test_reconcile_persists_only_on_change(policy):
    store = RecordingStore()
    record = _record(2.5)

    assert await policy.reconcile_medication_status(record, store) is True
    assert record.data["medicationStatus"] == "Past"
    assert await policy.reconcile_medication_status(record, store) is False
    assert store.saved == [record]


@pytest.mark.anyio
async def test_reconcile_leaves_legacy_records_alone(policy):
    store = RecordingStore()
    record = _record(None, data={"medicationStatus": "Active"})

    assert await policy.reconcile_medication_status(record, store) is False
    assert store.saved == []


@pytest.mark.anyio
async def test_grant_edit_access(policy):
    store = RecordingStore()
    record = _record(2.5)

    assert await policy.grant_edit_access(record, 8, store) is True
    assert record.editable_by == [8]
    assert policy.can_edit(record, 8) is True
    assert await policy.grant_edit_access(record, 8, store) is False
    assert len(store.saved) == 1


@pytest.mark.anyio
async def test_grant_edit_access_refused_when_locked(policy):
    with pytest.raises(AccessWindowClosed):
        await policy.grant_edit_access(_record(5), 8, RecordingStore())


def test_policy_rejects_inverted_windows():
    with pytest.raises(ValueError):
        AccessWindowPolicy(3, 2)

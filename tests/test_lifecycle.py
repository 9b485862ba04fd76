from datetime import timedelta

from positioner.codec import PatientRef, PositionerView
from positioner.lifecycle import (
    PositionerStatus,
    days_remaining,
    evaluate,
    expiration_date,
    is_expired,
    is_rotation_due,
    minutes_overdue,
    status,
)


def _view(d0, **overrides):
    fields = dict(
        id="dev-1",
        barcode="POS-1",
        opened_at=d0,
        expires_at=expiration_date(d0),
    )
    fields.update(overrides)
    return PositionerView(**fields)


def test_expiration_is_exactly_ninety_days(d0):
    assert expiration_date(d0) - d0 == timedelta(days=90)
    assert expiration_date(d0, days=30) == d0 + timedelta(days=30)


def test_status_precedence(d0):
    patient = PatientRef("Patient/A")
    past_expiry = d0 + timedelta(days=100)

    discarded = _view(d0, record_status="inactive", current_patient=patient)
    assert status(discarded, past_expiry) == PositionerStatus.DISCARDED

    expired_assigned = _view(d0, current_patient=patient)
    assert status(expired_assigned, past_expiry) == PositionerStatus.EXPIRED
    assert status(expired_assigned, d0) == PositionerStatus.ACTIVE

    assert status(_view(d0), d0) == PositionerStatus.AVAILABLE
    assert status(_view(d0, opened_at=None, expires_at=None), past_expiry) == PositionerStatus.AVAILABLE


def test_is_expired_ignores_record_status(d0):
    expiry = expiration_date(d0)
    view = _view(d0, record_status="inactive")
    assert is_expired(view, expiry)
    assert not is_expired(view, expiry - timedelta(seconds=1))
    assert not is_expired(_view(d0, expires_at=None), expiry)


def test_days_remaining_rounds_up_and_never_goes_negative(d0):
    expiry = expiration_date(d0)
    assert days_remaining(expiry, d0) == 90
    assert days_remaining(expiry, d0 + timedelta(seconds=1)) == 90
    assert days_remaining(expiry, d0 + timedelta(days=1)) == 89
    assert days_remaining(expiry, expiry - timedelta(minutes=1)) == 1
    assert days_remaining(expiry, expiry) == 0
    assert days_remaining(expiry, expiry + timedelta(days=3)) == 0
    assert days_remaining(None, d0) is None


def test_days_remaining_is_monotonic(d0):
    expiry = expiration_date(d0)
    samples = [days_remaining(expiry, d0 + timedelta(hours=7 * i)) for i in range(0, 340)]
    assert all(a >= b for a, b in zip(samples, samples[1:]))
    assert min(samples) == 0


def test_rotation_due_is_inclusive(d0):
    due_at = d0 + timedelta(hours=6)
    assert not is_rotation_due(due_at, due_at - timedelta(microseconds=1))
    assert is_rotation_due(due_at, due_at)
    assert is_rotation_due(due_at, due_at + timedelta(hours=2))
    assert not is_rotation_due(None, due_at)


def test_evaluate_flags_expired_while_assigned(d0):
    view = _view(d0, current_patient=PatientRef("Patient/A"), next_rotation_at=d0 + timedelta(hours=6))
    snap = evaluate(view, d0 + timedelta(days=91))
    assert snap.status == PositionerStatus.EXPIRED
    assert snap.expired_while_assigned
    assert snap.is_rotation_due
    assert snap.days_remaining == 0

    fresh = evaluate(view, d0)
    assert fresh.status == PositionerStatus.ACTIVE
    assert not fresh.expired_while_assigned
    assert fresh.days_remaining == 90


def test_minutes_overdue(d0):
    assert minutes_overdue(None, d0) == 0
    assert minutes_overdue(d0, d0) == 0
    assert minutes_overdue(d0 + timedelta(minutes=5), d0) == 0
    assert minutes_overdue(d0, d0 + timedelta(minutes=31, seconds=59)) == 31

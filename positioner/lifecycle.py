# positioner/lifecycle.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from positioner.codec import PositionerView, RECORD_INACTIVE

EXPIRATION_DAYS = 90
DEFAULT_ROTATION_INTERVAL_HOURS = 6

_ONE_DAY = timedelta(days=1)


class PositionerStatus(str, Enum):
    AVAILABLE = "available"
    ACTIVE = "active"
    EXPIRED = "expired"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class LifecycleSnapshot:
    """A positioner view together with everything derived from it at `now`."""
    positioner: PositionerView
    status: PositionerStatus
    days_remaining: Optional[int]
    is_rotation_due: bool

    @property
    def expired_while_assigned(self) -> bool:
        # still on a patient after the 90 days ran out
        return self.status == PositionerStatus.EXPIRED and self.positioner.is_assigned


def expiration_date(opened_at: datetime, days: int = EXPIRATION_DAYS) -> datetime:
    return opened_at + timedelta(days=days)


def is_expired(view: PositionerView, now: datetime) -> bool:
    """Ignores record_status; the sweeper filters discarded records itself."""
    return view.expires_at is not None and now >= view.expires_at


def status(view: PositionerView, now: datetime) -> PositionerStatus:
    """
    Decision order matters:
      discarded > expired > active > available
    A discarded unit never reports expired, and an expired unit still on a
    patient reports expired rather than active.
    """
    if view.record_status == RECORD_INACTIVE:
        return PositionerStatus.DISCARDED
    if is_expired(view, now):
        return PositionerStatus.EXPIRED
    if view.current_patient is not None:
        return PositionerStatus.ACTIVE
    return PositionerStatus.AVAILABLE


def days_remaining(expires_at: Optional[datetime], now: datetime) -> Optional[int]:
    if expires_at is None:
        return None
    delta = expires_at - now
    if delta <= timedelta(0):
        return 0
    days, rest = divmod(delta, _ONE_DAY)
    return days + (1 if rest else 0)


def is_rotation_due(next_rotation_at: Optional[datetime], now: datetime) -> bool:
    return next_rotation_at is not None and now >= next_rotation_at


def minutes_overdue(next_rotation_at: Optional[datetime], now: datetime) -> int:
    """Whole minutes past the scheduled rotation; 0 when not yet due."""
    if next_rotation_at is None or now <= next_rotation_at:
        return 0
    return (now - next_rotation_at) // timedelta(minutes=1)


def evaluate(view: PositionerView, now: datetime) -> LifecycleSnapshot:
    return LifecycleSnapshot(
        positioner=view,
        status=status(view, now),
        days_remaining=days_remaining(view.expires_at, now),
        is_rotation_due=is_rotation_due(view.next_rotation_at, now),
    )

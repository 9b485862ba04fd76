# positioner/workflow.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from positioner import lifecycle
from positioner.codec import (
    DEVICE_TYPE_CODE,
    RECORD_INACTIVE,
    CodecError,
    PatientRef,
    PositionerView,
    decode,
    encode,
    format_datetime,
    is_positioner,
    new_positioner_record,
    patient_reference,
    record_barcode,
)
from positioner.lifecycle import LifecycleSnapshot, PositionerStatus
from positioner.store import ResourceStore, StoreError

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Positioner expired, discard and replace"

POSTPONE_REASONS: Dict[str, str] = {
    "patient_asleep": "Patient asleep",
    "patient_off_unit": "Patient off unit",
    "procedure_ongoing": "Procedure ongoing",
    "equipment_issue": "Equipment issue",
    "other": "Other reason",
}

Patient = Union[PatientRef, Dict[str, Any], str]


class Decision(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class EventType(str, Enum):
    CREATE = "CREATE"
    SCAN = "SCAN"
    ASSIGN = "ASSIGN"
    DEACTIVATE = "DEACTIVATE"
    DISCARD = "DISCARD"
    AUTO_DISCARD = "AUTO_DISCARD"          # issued by the expiration sweeper
    ROTATION_COMPLETED = "ROTATION_COMPLETED"
    ROTATION_POSTPONED = "ROTATION_POSTPONED"


@dataclass(frozen=True)
class WorkflowResult:
    decision: Decision
    reason: str
    event: EventType
    barcode: Optional[str]
    prev_status: Optional[PositionerStatus]
    next_status: Optional[PositionerStatus]
    timestamp_utc: str
    details: Dict[str, Any] = field(default_factory=dict)
    positioner: Optional[PositionerView] = None
    record: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.decision == Decision.ACCEPT


class PreconditionFailed(Exception):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class PositionerWorkflow:
    """
    Mutating positioner operations on top of a ResourceStore.

    Each operation re-reads the record, decodes it, checks preconditions,
    computes the next view, encodes it and writes it back (last writer wins).
    Rejections and store failures come back as REJECT results; nothing here
    retries.
    """

    def __init__(
        self,
        store: ResourceStore,
        resource_type: str = "Device",
        device_type_code: str = DEVICE_TYPE_CODE,
        expiration_days: int = lifecycle.EXPIRATION_DAYS,
        default_rotation_interval_hours: int = lifecycle.DEFAULT_ROTATION_INTERVAL_HOURS,
        default_postpone_minutes: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
        on_result: Optional[Callable[[WorkflowResult], None]] = None,
        overdue_threshold_minutes: int = 30,
    ) -> None:
        self.store = store
        self.resource_type = resource_type
        self.device_type_code = device_type_code
        self.expiration_days = expiration_days
        self.default_rotation_interval_hours = default_rotation_interval_hours
        self.default_postpone_minutes = default_postpone_minutes
        self.overdue_threshold_minutes = overdue_threshold_minutes
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._on_result = on_result

    def now(self, now: Optional[datetime] = None) -> datetime:
        # stored timestamps decode as aware UTC; naive input is taken as UTC
        t = now or self._clock()
        return t if t.tzinfo else t.replace(tzinfo=timezone.utc)

    # -------------------------------
    # Reads
    # -------------------------------

    def list_records(self) -> List[Dict[str, Any]]:
        devices = self.store.search(self.resource_type)
        return [d for d in devices if is_positioner(d, self.device_type_code)]

    def find_record(self, barcode: str) -> Optional[Dict[str, Any]]:
        for record in self.list_records():
            if record_barcode(record) == barcode:
                return record
        return None

    def find_by_barcode(self, barcode: str) -> Optional[PositionerView]:
        record = self.find_record(barcode)
        return decode(record) if record is not None else None

    def list_positioners(self, now: Optional[datetime] = None) -> List[LifecycleSnapshot]:
        t = self.now(now)
        snapshots = []
        for record in self.list_records():
            try:
                snapshots.append(lifecycle.evaluate(decode(record), t))
            except CodecError as e:
                logger.warning("Skipping unreadable positioner %s: %s", record.get("id"), e)
        return snapshots

    def positioners_for_patient(self, patient: Patient, now: Optional[datetime] = None) -> List[LifecycleSnapshot]:
        ref = patient_reference(patient).reference
        return [
            s for s in self.list_positioners(now)
            if s.status == PositionerStatus.ACTIVE
            and s.positioner.current_patient is not None
            and s.positioner.current_patient.reference == ref
        ]

    def rotations_due(self, now: Optional[datetime] = None) -> List[LifecycleSnapshot]:
        due = [
            s for s in self.list_positioners(now)
            if s.status != PositionerStatus.DISCARDED and s.is_rotation_due
        ]
        return sorted(due, key=lambda s: s.positioner.next_rotation_at)

    def rotations_overdue(
        self,
        threshold_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[LifecycleSnapshot]:
        """
        Assigned positioners whose rotation is more than `threshold_minutes`
        past due. Each one is logged as an escalation for the charge nurse.
        """
        t = self.now(now)
        threshold = self.overdue_threshold_minutes if threshold_minutes is None else threshold_minutes
        overdue = []
        for s in self.rotations_due(t):
            if s.status != PositionerStatus.ACTIVE:
                continue
            late = lifecycle.minutes_overdue(s.positioner.next_rotation_at, t)
            if late > threshold:
                logger.warning("ESCALATED: rotation of %s for %s overdue by %s minutes",
                               s.positioner.barcode, s.positioner.current_patient.reference, late)
                overdue.append(s)
        return overdue

    # -------------------------------
    # Creation and scanning
    # -------------------------------

    def create(self, barcode: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Create a positioner and start its clock. The caller checks that no
        record exists for the barcode; StoreError propagates.
        """
        t = self.now(now)
        view = PositionerView(
            barcode=barcode,
            opened_at=t,
            expires_at=lifecycle.expiration_date(t, self.expiration_days),
        )
        record = self.store.create(self.resource_type, encode(view, new_positioner_record(barcode, self.device_type_code)))
        logger.info("Created positioner %s (id=%s), expires %s", barcode, record.get("id"), format_datetime(view.expires_at))

        created = decode(record)
        self._emit(WorkflowResult(
            decision=Decision.ACCEPT,
            reason="CREATED",
            event=EventType.CREATE,
            barcode=barcode,
            prev_status=None,
            next_status=lifecycle.status(created, t),
            timestamp_utc=format_datetime(t),
            details={"opened_at": format_datetime(t), "expires_at": format_datetime(view.expires_at)},
            positioner=created,
            record=record,
        ))
        return record

    def scan_and_activate(
        self,
        barcode: str,
        patient: Patient,
        rotation_interval_hours: int,
        now: Optional[datetime] = None,
    ) -> WorkflowResult:
        """
        Main scan workflow:
          1. find the positioner by barcode, creating it on first scan
          2. block activation if it is past its expiration date
          3. assign it to the patient (replaces any previous assignment)
        """
        t = self.now(now)
        logger.info("Scan & activate: barcode=%s", barcode)
        try:
            record = self.find_record(barcode)
            if record is None:
                logger.info("No positioner for %s, creating one", barcode)
                record = self.create(barcode, now=t)
            view = decode(record)
        except StoreError as e:
            return self._failure(EventType.SCAN, barcode, None, t, "STORE_ERROR", str(e))
        except CodecError as e:
            return self._failure(EventType.SCAN, barcode, None, t, "INVALID_RECORD", str(e))

        if lifecycle.is_expired(view, t):
            logger.info("Positioner %s is expired, blocking activation", barcode)
            return self._failure(
                EventType.SCAN, barcode, view, t, "EXPIRED_BLOCKED", EXPIRED_MESSAGE,
                details={"expires_at": format_datetime(view.expires_at)},
            )

        return self.assign(record, patient, rotation_interval_hours, now=t, event=EventType.SCAN)

    # -------------------------------
    # Assignment
    # -------------------------------

    def assign(
        self,
        record: Dict[str, Any],
        patient: Patient,
        rotation_interval_hours: int,
        now: Optional[datetime] = None,
        event: EventType = EventType.ASSIGN,
    ) -> WorkflowResult:
        t = self.now(now)
        barcode = record_barcode(record)

        if isinstance(rotation_interval_hours, bool) or not isinstance(rotation_interval_hours, int) \
                or rotation_interval_hours <= 0:
            return self._failure(event, barcode, None, t, "INVALID_INTERVAL",
                                 f"rotation interval must be a positive number of hours, got {rotation_interval_hours!r}")
        try:
            ref = patient_reference(patient)
        except ValueError as e:
            return self._failure(event, barcode, None, t, "INVALID_PATIENT", str(e))

        def _assigned(view: PositionerView) -> PositionerView:
            self._require_not_terminal(view)
            # all assignment fields are written together; the previous
            # patient's rotation history never carries over
            return replace(
                view,
                current_patient=ref,
                assigned_at=t,
                rotation_interval_hours=rotation_interval_hours,
                next_rotation_at=t + timedelta(hours=rotation_interval_hours),
                last_rotated_at=None,
            )

        return self._mutate(event, record, t, _assigned, "ASSIGNED",
                            details={"patient": ref.reference, "rotation_interval_hours": rotation_interval_hours})

    def deactivate(self, record: Dict[str, Any], now: Optional[datetime] = None) -> WorkflowResult:
        """Unassign the positioner; opened/expires dates are left alone."""
        t = self.now(now)
        return self._mutate(EventType.DEACTIVATE, record, t, _unassigned, "DEACTIVATED")

    def discard(
        self,
        record: Dict[str, Any],
        now: Optional[datetime] = None,
        event: EventType = EventType.DISCARD,
    ) -> WorkflowResult:
        t = self.now(now)

        def _discarded(view: PositionerView) -> PositionerView:
            if view.is_terminal:
                return view
            return replace(_unassigned(view), record_status=RECORD_INACTIVE)

        return self._mutate(event, record, t, _discarded, "DISCARDED", unchanged_reason="ALREADY_DISCARDED")

    # -------------------------------
    # Rotation
    # -------------------------------

    def complete_rotation(self, record: Dict[str, Any], now: Optional[datetime] = None) -> WorkflowResult:
        t = self.now(now)

        def _rotated(view: PositionerView) -> PositionerView:
            self._require_not_terminal(view)
            if not view.is_assigned:
                raise PreconditionFailed("NOT_ASSIGNED", "Positioner is not assigned to a patient")
            hours = view.rotation_interval_hours
            if not hours:
                logger.warning(
                    "Positioner %s has no rotation interval, using default of %sh",
                    view.barcode, self.default_rotation_interval_hours,
                )
                hours = self.default_rotation_interval_hours
            return replace(view, last_rotated_at=t, next_rotation_at=t + timedelta(hours=hours))

        return self._mutate(EventType.ROTATION_COMPLETED, record, t, _rotated, "ROTATION_COMPLETED")

    def postpone_rotation(
        self,
        record: Dict[str, Any],
        minutes: Optional[int] = None,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
        reason_text: Optional[str] = None,
    ) -> WorkflowResult:
        """
        Push the next rotation back by `minutes` from the currently scheduled
        time (not from now), so repeated postpones add up.

        `reason` is one of POSTPONE_REASONS; "other" takes its label from
        `reason_text`. The label is recorded in the result details.
        """
        t = self.now(now)
        delay = self.default_postpone_minutes if minutes is None else minutes
        if isinstance(delay, bool) or not isinstance(delay, int) or delay <= 0:
            return self._failure(EventType.ROTATION_POSTPONED, record_barcode(record), None, t,
                                 "INVALID_POSTPONE", f"postpone minutes must be a positive integer, got {delay!r}")
        details: Dict[str, Any] = {"minutes": delay}
        if reason is not None:
            if reason not in POSTPONE_REASONS:
                return self._failure(EventType.ROTATION_POSTPONED, record_barcode(record), None, t,
                                     "INVALID_POSTPONE_REASON", f"unknown postpone reason {reason!r}")
            details["reason"] = reason
            label = POSTPONE_REASONS[reason]
            if reason == "other" and reason_text:
                label = reason_text
            details["reason_text"] = label

        def _postponed(view: PositionerView) -> PositionerView:
            self._require_not_terminal(view)
            if not view.is_assigned:
                raise PreconditionFailed("NOT_ASSIGNED", "Positioner is not assigned to a patient")
            base = view.next_rotation_at or t
            return replace(view, next_rotation_at=base + timedelta(minutes=delay))

        return self._mutate(EventType.ROTATION_POSTPONED, record, t, _postponed, "ROTATION_POSTPONED",
                            details=details)

    # -------------------------------
    # Helpers
    # -------------------------------

    @staticmethod
    def _require_not_terminal(view: PositionerView) -> None:
        if view.is_terminal:
            raise PreconditionFailed("TERMINAL_RECORD", "Positioner has been discarded")

    def _reload(self, record: Dict[str, Any]) -> Dict[str, Any]:
        resource_id = record.get("id")
        if not resource_id:
            return record
        return self.store.read(record.get("resourceType") or self.resource_type, resource_id)

    def _mutate(
        self,
        event: EventType,
        record: Dict[str, Any],
        t: datetime,
        transform: Callable[[PositionerView], PositionerView],
        reason: str,
        details: Optional[Dict[str, Any]] = None,
        unchanged_reason: str = "UNCHANGED",
    ) -> WorkflowResult:
        barcode = record_barcode(record)
        view: Optional[PositionerView] = None
        try:
            current = self._reload(record)
            view = decode(current)
            prev = lifecycle.status(view, t)
            nxt = transform(view)
            if nxt == view:
                return self._emit(self._unchanged(unchanged_reason, event, view, prev, t, details, current))
            saved = self.store.update(encode(nxt, current))
        except PreconditionFailed as e:
            return self._failure(event, barcode, view, t, e.reason, e.message, details)
        except CodecError as e:
            return self._failure(event, barcode, view, t, "INVALID_RECORD", str(e), details)
        except StoreError as e:
            logger.error("Store failure during %s for %s: %s", event.value, barcode, e)
            return self._failure(event, barcode, view, t, "STORE_ERROR", str(e), details)

        saved_view = decode(saved)
        result = WorkflowResult(
            decision=Decision.ACCEPT,
            reason=reason,
            event=event,
            barcode=saved_view.barcode,
            prev_status=prev,
            next_status=lifecycle.status(saved_view, t),
            timestamp_utc=format_datetime(t),
            details=self._describe(saved_view, details),
            positioner=saved_view,
            record=saved,
        )
        return self._emit(result)

    def _unchanged(
        self,
        reason: str,
        event: EventType,
        view: PositionerView,
        prev: PositionerStatus,
        t: datetime,
        details: Optional[Dict[str, Any]],
        record: Dict[str, Any],
    ) -> WorkflowResult:
        return WorkflowResult(
            decision=Decision.ACCEPT,
            reason=reason,
            event=event,
            barcode=view.barcode,
            prev_status=prev,
            next_status=prev,
            timestamp_utc=format_datetime(t),
            details=self._describe(view, details),
            positioner=view,
            record=record,
        )

    def _failure(
        self,
        event: EventType,
        barcode: Optional[str],
        view: Optional[PositionerView],
        t: datetime,
        reason: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> WorkflowResult:
        st = lifecycle.status(view, t) if view is not None else None
        return self._emit(WorkflowResult(
            decision=Decision.REJECT,
            reason=reason,
            event=event,
            barcode=barcode,
            prev_status=st,
            next_status=st,
            timestamp_utc=format_datetime(t),
            details=dict(details or {}),
            positioner=view,
            error=message,
        ))

    @staticmethod
    def _describe(view: PositionerView, extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        details: Dict[str, Any] = dict(extra or {})
        details["id"] = view.id
        if view.next_rotation_at is not None:
            details["next_rotation_at"] = format_datetime(view.next_rotation_at)
        if view.last_rotated_at is not None:
            details["last_rotated_at"] = format_datetime(view.last_rotated_at)
        return details

    def _emit(self, result: WorkflowResult) -> WorkflowResult:
        if self._on_result is not None:
            # any store write has already been applied
            try:
                self._on_result(result)
            except Exception:
                logger.exception("Result listener failed for %s %s", result.event.value, result.barcode)
        return result


def _unassigned(view: PositionerView) -> PositionerView:
    return replace(
        view,
        current_patient=None,
        assigned_at=None,
        rotation_interval_hours=None,
        next_rotation_at=None,
    )

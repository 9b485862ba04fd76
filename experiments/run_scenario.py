# experiments/run_scenario.py
# Replays one positioner's life on a simulated clock:
# first scan, rotation due, rotation done, 91 days later sweep, rescan blocked.
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from positioner.reconciler import DuplicateReconciler
from positioner.sweeper import ExpirationSweeper
from positioner.workflow import PositionerWorkflow
from server.audit_logger import AuditLogger
from server.sqlite_store import SqliteResourceStore


class SimClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def main() -> None:
    d0 = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)
    clock = SimClock(d0)

    store = SqliteResourceStore("data/positioners_scenario.sqlite")
    audit = AuditLogger(
        db_path="logs/audit_scenario.sqlite",
        event_log_path="logs/events_scenario.log",
        decision_log_path="logs/decisions_scenario.log",
    )
    workflow = PositionerWorkflow(store, clock=clock, on_result=audit.log_decision)
    sweeper = ExpirationSweeper(workflow, clock=clock)

    print("Reconcile:", DuplicateReconciler(workflow).reconcile())

    audit.log_event({"type": "SCAN", "barcode": "POS-1", "patient": "Patient/A"})
    r1 = workflow.scan_and_activate("POS-1", "Patient/A", 6)
    print("1) SCAN:", r1.decision.value, r1.reason, r1.next_status)

    clock.advance(hours=6)
    due = [s.positioner.barcode for s in workflow.rotations_due()]
    print("2) DUE at D0+6h:", due)

    r2 = workflow.complete_rotation(r1.record)
    print("3) ROTATED:", r2.reason, r2.details.get("next_rotation_at"))

    clock.advance(days=91)
    report = sweeper.sweep()
    print("4) SWEEP:", report)

    audit.log_event({"type": "SCAN", "barcode": "POS-1", "patient": "Patient/B"})
    r3 = workflow.scan_and_activate("POS-1", "Patient/B", 6)
    print("5) RESCAN:", r3.decision.value, r3.reason, r3.error)


if __name__ == "__main__":
    main()

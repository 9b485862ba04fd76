"""
Positioner tracker service wiring and command line.

Usage:
    python -m server.app scan POS-1 Patient/123 --interval 6
    python -m server.app rotate POS-1
    python -m server.app postpone POS-1 --minutes 30 --reason patient_asleep
    python -m server.app list [--patient Patient/123]
    python -m server.app due
    python -m server.app overdue --threshold 30
    python -m server.app history POS-1
    python -m server.app sweep
    python -m server.app reconcile
    python -m server.app monitor --duration 600
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from positioner.codec import format_datetime
from positioner.lifecycle import LifecycleSnapshot
from positioner.reconciler import DuplicateReconciler
from positioner.scheduler import ExpirationMonitor
from positioner.store import ResourceStore
from positioner.sweeper import ExpirationSweeper
from positioner.workflow import POSTPONE_REASONS, PositionerWorkflow, WorkflowResult
from server.audit_logger import AuditLogger
from server.config_loader import SystemConfig, load_system_config
from server.sqlite_store import SqliteResourceStore

logger = logging.getLogger(__name__)


@dataclass
class TrackerService:
    config: SystemConfig
    store: ResourceStore
    audit: AuditLogger
    workflow: PositionerWorkflow
    sweeper: ExpirationSweeper
    reconciler: DuplicateReconciler
    monitor: ExpirationMonitor


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_service(
    cfg: SystemConfig,
    store: Optional[ResourceStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> TrackerService:
    store = store if store is not None else SqliteResourceStore(cfg.store_db_path)
    audit = AuditLogger(db_path=cfg.db_path, event_log_path=cfg.event_log_path, decision_log_path=cfg.decision_log_path)
    workflow = PositionerWorkflow(
        store,
        resource_type=cfg.resource_type,
        device_type_code=cfg.device_type_code,
        expiration_days=cfg.expiration_days,
        default_rotation_interval_hours=cfg.default_rotation_interval_hours,
        default_postpone_minutes=cfg.default_postpone_minutes,
        clock=clock,
        on_result=audit.log_decision,
        overdue_threshold_minutes=cfg.overdue_threshold_minutes,
    )
    sweeper = ExpirationSweeper(workflow, clock=clock)
    reconciler = DuplicateReconciler(workflow)
    monitor = ExpirationMonitor(
        sweeper,
        reconciler,
        sweep_interval_seconds=cfg.sweep_interval_seconds,
        reconcile_interval_seconds=cfg.reconcile_interval_seconds,
        reconcile_on_start=cfg.reconcile_on_start,
    )
    return TrackerService(cfg, store, audit, workflow, sweeper, reconciler, monitor)


# -------------------------------
# Commands
# -------------------------------

def _print_result(result: WorkflowResult) -> int:
    status = result.next_status.value if result.next_status else "-"
    print(f"{result.decision.value} {result.event.value} {result.barcode} [{status}] {result.reason}")
    if result.error:
        print(f"  {result.error}")
    return 0 if result.success else 1


def _print_snapshot(s: LifecycleSnapshot) -> None:
    p = s.positioner
    patient = p.current_patient.reference if p.current_patient else "-"
    next_rotation = format_datetime(p.next_rotation_at) if p.next_rotation_at else "-"
    due = " ROTATION DUE" if s.is_rotation_due else ""
    print(f"{p.barcode:<16} {s.status.value:<10} days_left={s.days_remaining} patient={patient} next={next_rotation}{due}")


def _with_record(svc: TrackerService, barcode: str):
    record = svc.workflow.find_record(barcode)
    if record is None:
        print(f"No positioner with barcode {barcode}", file=sys.stderr)
    return record


def cmd_scan(args, svc: TrackerService) -> int:
    svc.audit.log_event({"type": "SCAN", "barcode": args.barcode, "patient": args.patient})
    interval = svc.config.default_rotation_interval_hours if args.interval is None else args.interval
    return _print_result(svc.workflow.scan_and_activate(args.barcode, args.patient, interval))


def cmd_rotate(args, svc: TrackerService) -> int:
    record = _with_record(svc, args.barcode)
    if record is None:
        return 1
    return _print_result(svc.workflow.complete_rotation(record))


def cmd_postpone(args, svc: TrackerService) -> int:
    record = _with_record(svc, args.barcode)
    if record is None:
        return 1
    return _print_result(svc.workflow.postpone_rotation(record, args.minutes, reason=args.reason, reason_text=args.reason_text))


def cmd_deactivate(args, svc: TrackerService) -> int:
    record = _with_record(svc, args.barcode)
    if record is None:
        return 1
    return _print_result(svc.workflow.deactivate(record))


def cmd_discard(args, svc: TrackerService) -> int:
    record = _with_record(svc, args.barcode)
    if record is None:
        return 1
    return _print_result(svc.workflow.discard(record))


def cmd_list(args, svc: TrackerService) -> int:
    if args.patient:
        snapshots = svc.workflow.positioners_for_patient(args.patient)
    else:
        snapshots = svc.workflow.list_positioners()
    for s in snapshots:
        _print_snapshot(s)
    return 0


def cmd_due(args, svc: TrackerService) -> int:
    for s in svc.workflow.rotations_due():
        _print_snapshot(s)
    return 0


def cmd_overdue(args, svc: TrackerService) -> int:
    for s in svc.workflow.rotations_overdue(args.threshold):
        _print_snapshot(s)
    return 0


def cmd_history(args, svc: TrackerService) -> int:
    for row in svc.audit.history(args.barcode, limit=args.limit):
        print(f"{row['timestamp_utc']} {row['event']:<20} {row['decision']:<6} {row['reason']}")
    return 0


def cmd_sweep(args, svc: TrackerService) -> int:
    report = svc.sweeper.sweep()
    print(f"checked={report.checked} discarded={len(report.discarded)} failed={len(report.failed)}")
    for barcode in report.discarded:
        print(f"  discarded {barcode}")
    return 1 if report.error else 0


def cmd_reconcile(args, svc: TrackerService) -> int:
    report = svc.reconciler.reconcile()
    print(f"groups={report.groups} deleted={len(report.deleted)} failed={len(report.failed)}")
    for barcode, kept in report.kept.items():
        print(f"  {barcode}: kept {kept}")
    return 1 if report.error else 0


def cmd_monitor(args, svc: TrackerService) -> int:
    logger.info("Starting expiration monitor for %ss (sweep every %ss)", args.duration, svc.config.sweep_interval_seconds)
    with svc.monitor:
        try:
            time.sleep(args.duration)
        except KeyboardInterrupt:
            pass
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Positioner lifecycle tracker")
    parser.add_argument("--config", default="config/system_config.yaml", help="YAML config path")
    subs = parser.add_subparsers(dest="command", required=True)

    scan_p = subs.add_parser("scan", help="Scan a positioner onto a patient")
    scan_p.add_argument("barcode")
    scan_p.add_argument("patient", help="Patient reference, e.g. Patient/123")
    scan_p.add_argument("--interval", type=int, default=None, help="Rotation interval in hours")

    rotate_p = subs.add_parser("rotate", help="Record a completed rotation")
    rotate_p.add_argument("barcode")

    postpone_p = subs.add_parser("postpone", help="Postpone the next rotation")
    postpone_p.add_argument("barcode")
    postpone_p.add_argument("--minutes", type=int, default=None)
    postpone_p.add_argument("--reason", choices=sorted(POSTPONE_REASONS), default=None)
    postpone_p.add_argument("--reason-text", default=None, help="Free text for --reason other")

    deactivate_p = subs.add_parser("deactivate", help="Unassign a positioner from its patient")
    deactivate_p.add_argument("barcode")

    discard_p = subs.add_parser("discard", help="Permanently retire a positioner")
    discard_p.add_argument("barcode")

    list_p = subs.add_parser("list", help="List positioners")
    list_p.add_argument("--patient", default=None)

    subs.add_parser("due", help="List positioners with a rotation due")
    overdue_p = subs.add_parser("overdue", help="List and escalate rotations overdue past a threshold")
    overdue_p.add_argument("--threshold", type=int, default=None, help="Minutes past due")

    history_p = subs.add_parser("history", help="Show the recorded decisions for a positioner")
    history_p.add_argument("barcode")
    history_p.add_argument("--limit", type=int, default=100)

    subs.add_parser("sweep", help="Discard expired positioners once")
    subs.add_parser("reconcile", help="Delete duplicate positioner records once")

    monitor_p = subs.add_parser("monitor", help="Run background expiration checks")
    monitor_p.add_argument("--duration", type=float, default=3600.0, help="Seconds to run")

    args = parser.parse_args(argv)

    cfg = load_system_config(args.config)
    configure_logging(cfg.log_level)
    svc = build_service(cfg)

    commands = {
        "scan": cmd_scan,
        "rotate": cmd_rotate,
        "postpone": cmd_postpone,
        "deactivate": cmd_deactivate,
        "discard": cmd_discard,
        "list": cmd_list,
        "due": cmd_due,
        "overdue": cmd_overdue,
        "history": cmd_history,
        "sweep": cmd_sweep,
        "reconcile": cmd_reconcile,
        "monitor": cmd_monitor,
    }
    return commands[args.command](args, svc)


if __name__ == "__main__":
    sys.exit(main())

import json
import sqlite3

from positioner.store import InMemoryResourceStore
from server.app import build_service, main
from server.audit_logger import AuditLogger
from server.config_loader import SystemConfig, load_system_config


def test_defaults_without_file():
    cfg = load_system_config(None)
    assert cfg == SystemConfig()
    assert cfg.expiration_days == 90
    assert cfg.sweep_interval_seconds == 300


def test_partial_yaml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "system_config.yaml"
    path.write_text(
        "lifecycle:\n"
        "  expiration_days: 30\n"
        "schedule:\n"
        "  sweep_interval_seconds: 60\n"
        "logging:\n"
        "  level: debug\n",
        encoding="utf-8",
    )
    cfg = load_system_config(str(path))

    assert cfg.expiration_days == 30
    assert cfg.sweep_interval_seconds == 60
    assert cfg.log_level == "DEBUG"
    assert cfg.default_rotation_interval_hours == 6
    assert cfg.device_type_code == "fluidized-positioner"


def _cfg(tmp_path, **overrides):
    fields = dict(
        store_db_path=str(tmp_path / "data" / "positioners.sqlite"),
        db_path=str(tmp_path / "logs" / "audit.sqlite"),
        event_log_path=str(tmp_path / "logs" / "events.log"),
        decision_log_path=str(tmp_path / "logs" / "decisions.log"),
    )
    fields.update(overrides)
    return SystemConfig(**fields)


def test_audit_logger_records_workflow_decisions(tmp_path, clock):
    svc = build_service(_cfg(tmp_path), store=InMemoryResourceStore(), clock=clock)
    svc.audit.log_event({"type": "SCAN", "barcode": "POS-1"})

    svc.workflow.scan_and_activate("POS-1", "Patient/A", 6)
    clock.advance(days=90)
    svc.workflow.scan_and_activate("POS-1", "Patient/B", 6)

    con = sqlite3.connect(svc.audit.db_path)
    rows = con.execute("SELECT event, decision, reason, next_status FROM decisions ORDER BY id").fetchall()
    con.close()
    assert rows == [
        ("CREATE", "ACCEPT", "CREATED", "available"),
        ("SCAN", "ACCEPT", "ASSIGNED", "active"),
        ("SCAN", "REJECT", "EXPIRED_BLOCKED", "expired"),
    ]

    with open(svc.audit.decision_log_path, encoding="utf-8") as f:
        lines = [json.loads(line) for line in f]
    assert lines[-1]["details"]["error"].startswith("Positioner expired")

    with open(svc.audit.event_log_path, encoding="utf-8") as f:
        event = json.loads(f.readline())
    assert event["barcode"] == "POS-1"
    assert "timestamp_utc" in event


def test_audit_logger_accepts_bare_filenames(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    logger = AuditLogger("audit.sqlite", "events.log", "decisions.log")
    logger.log_event({"type": "PING"})
    assert (tmp_path / "events.log").exists()


def test_cli_scan_and_list(tmp_path, capsys):
    cfg_path = tmp_path / "system_config.yaml"
    cfg_path.write_text(
        "store:\n"
        f"  db_path: {tmp_path / 'data' / 'positioners.sqlite'}\n"
        "logging:\n"
        f"  db_path: {tmp_path / 'logs' / 'audit.sqlite'}\n"
        f"  event_log_path: {tmp_path / 'logs' / 'events.log'}\n"
        f"  decision_log_path: {tmp_path / 'logs' / 'decisions.log'}\n",
        encoding="utf-8",
    )

    assert main(["--config", str(cfg_path), "scan", "POS-1", "Patient/A", "--interval", "4"]) == 0
    assert main(["--config", str(cfg_path), "list", "--patient", "Patient/A"]) == 0
    assert main(["--config", str(cfg_path), "rotate", "MISSING"]) == 1

    out = capsys.readouterr().out
    assert "ACCEPT SCAN POS-1 [active] ASSIGNED" in out
    assert "POS-1" in out.splitlines()[-1]


def test_history_lists_decisions_newest_first(tmp_path, clock):
    svc = build_service(_cfg(tmp_path), store=InMemoryResourceStore(), clock=clock)
    scanned = svc.workflow.scan_and_activate("POS-1", "Patient/A", 6)
    svc.workflow.scan_and_activate("POS-2", "Patient/B", 6)
    clock.advance(hours=6)
    svc.workflow.postpone_rotation(scanned.record, 20, reason="procedure_ongoing")

    rows = svc.audit.history("POS-1")

    assert [r["event"] for r in rows] == ["ROTATION_POSTPONED", "SCAN", "CREATE"]
    assert rows[0]["details"]["reason_text"] == "Procedure ongoing"
    assert svc.audit.history("POS-1", limit=1)[0]["event"] == "ROTATION_POSTPONED"
    assert svc.audit.history("NOPE") == []


def test_cli_postpone_overdue_and_history(tmp_path, capsys):
    cfg_path = tmp_path / "system_config.yaml"
    cfg_path.write_text(
        "store:\n"
        f"  db_path: {tmp_path / 'data' / 'positioners.sqlite'}\n"
        "logging:\n"
        f"  db_path: {tmp_path / 'logs' / 'audit.sqlite'}\n"
        f"  event_log_path: {tmp_path / 'logs' / 'events.log'}\n"
        f"  decision_log_path: {tmp_path / 'logs' / 'decisions.log'}\n",
        encoding="utf-8",
    )
    base = ["--config", str(cfg_path)]

    assert main(base + ["scan", "POS-1", "Patient/A"]) == 0
    assert main(base + ["postpone", "POS-1", "--minutes", "15", "--reason", "patient_asleep"]) == 0
    assert main(base + ["overdue"]) == 0
    assert main(base + ["history", "POS-1"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert "ACCEPT ROTATION_POSTPONED POS-1 [active] ROTATION_POSTPONED" in lines
    assert "ROTATION_POSTPONED" in lines[-3]
    assert "CREATE" in lines[-1]

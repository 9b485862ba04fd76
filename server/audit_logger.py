from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List

from positioner.workflow import WorkflowResult


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


class AuditLogger:
    """
    Logs:
      1) raw events (append-only file)
      2) workflow decisions (append-only file)
      3) structured decisions in SQLite (queryable for results tables)
    """

    def __init__(self, db_path: str, event_log_path: str, decision_log_path: str) -> None:
        self.db_path = db_path
        self.event_log_path = event_log_path
        self.decision_log_path = decision_log_path

        _ensure_parent(db_path)
        _ensure_parent(event_log_path)
        _ensure_parent(decision_log_path)

        self._init_db()

    def _init_db(self) -> None:
        con = sqlite3.connect(self.db_path)
        cur = con.cursor()
        cur.execute("""
        CREATE TABLE IF NOT EXISTS decisions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp_utc TEXT NOT NULL,
            barcode TEXT,
            event TEXT NOT NULL,
            decision TEXT NOT NULL,
            reason TEXT NOT NULL,
            prev_status TEXT,
            next_status TEXT,
            details_json TEXT NOT NULL
        )
        """)
        con.commit()
        con.close()

    def log_event(self, event: Dict[str, Any]) -> None:
        record = {"timestamp_utc": _now_iso(), **event}
        with open(self.event_log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")

    def log_decision(self, d: WorkflowResult) -> None:
        prev_status = d.prev_status.value if d.prev_status else None
        next_status = d.next_status.value if d.next_status else None
        details = dict(d.details)
        if d.error:
            details["error"] = d.error

        # file log
        record = {
            "timestamp_utc": d.timestamp_utc,
            "barcode": d.barcode,
            "event": d.event.value,
            "decision": d.decision.value,
            "reason": d.reason,
            "prev_status": prev_status,
            "next_status": next_status,
            "details": details,
        }
        with open(self.decision_log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")

        # sqlite log
        con = sqlite3.connect(self.db_path)
        cur = con.cursor()
        cur.execute(
            """
            INSERT INTO decisions (timestamp_utc, barcode, event, decision, reason, prev_status, next_status, details_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                d.timestamp_utc,
                d.barcode,
                d.event.value,
                d.decision.value,
                d.reason,
                prev_status,
                next_status,
                json.dumps(details, default=str),
            ),
        )
        con.commit()
        con.close()

    def history(self, barcode: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Decisions recorded for one positioner, newest first."""
        con = sqlite3.connect(self.db_path)
        cur = con.cursor()
        cur.execute(
            """
            SELECT timestamp_utc, event, decision, reason, prev_status, next_status, details_json
            FROM decisions WHERE barcode = ? ORDER BY id DESC LIMIT ?
            """,
            (barcode, limit),
        )
        rows = cur.fetchall()
        con.close()

        return [
            {
                "timestamp_utc": ts,
                "event": event,
                "decision": decision,
                "reason": reason,
                "prev_status": prev_status,
                "next_status": next_status,
                "details": json.loads(details_json),
            }
            for ts, event, decision, reason, prev_status, next_status, details_json in rows
        ]

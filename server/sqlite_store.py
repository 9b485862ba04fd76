from __future__ import annotations

import copy
import json
import os
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

from positioner.store import RecordNotFound, StoreError, matches_filters, stamp_meta


class SqliteResourceStore:
    """
    Local ResourceStore backed by a single SQLite table.
    Records are stored whole as JSON; search filters are applied after
    loading every record of the requested type.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        try:
            return sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open store {self.db_path}: {e}") from e

    def _init_db(self) -> None:
        con = self._connect()
        try:
            con.execute("""
            CREATE TABLE IF NOT EXISTS resources (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                resource_type TEXT NOT NULL,
                id TEXT NOT NULL UNIQUE,
                version INTEGER NOT NULL,
                last_updated TEXT NOT NULL,
                body_json TEXT NOT NULL
            )
            """)
            con.commit()
        finally:
            con.close()

    def _execute(self, sql: str, params: tuple = ()) -> List[tuple]:
        con = self._connect()
        try:
            cur = con.execute(sql, params)
            rows = cur.fetchall()
            con.commit()
            return rows
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            con.close()

    def create(self, resource_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(data)
        record["resourceType"] = resource_type
        record["id"] = uuid.uuid4().hex
        stamp_meta(record, 1)
        self._execute(
            "INSERT INTO resources (resource_type, id, version, last_updated, body_json) VALUES (?, ?, ?, ?, ?)",
            (resource_type, record["id"], 1, record["meta"]["lastUpdated"], json.dumps(record)),
        )
        return record

    def read(self, resource_type: str, resource_id: str) -> Dict[str, Any]:
        rows = self._execute(
            "SELECT body_json FROM resources WHERE resource_type = ? AND id = ?",
            (resource_type, resource_id),
        )
        if not rows:
            raise RecordNotFound(resource_type, resource_id)
        return json.loads(rows[0][0])

    def update(self, record: Dict[str, Any]) -> Dict[str, Any]:
        resource_type = record.get("resourceType")
        resource_id = record.get("id")
        if not resource_type or not resource_id:
            raise StoreError("update requires resourceType and id")

        rows = self._execute(
            "SELECT version FROM resources WHERE resource_type = ? AND id = ?",
            (resource_type, resource_id),
        )
        if not rows:
            raise RecordNotFound(resource_type, resource_id)

        version = rows[0][0] + 1
        stored = stamp_meta(copy.deepcopy(record), version)
        self._execute(
            "UPDATE resources SET version = ?, last_updated = ?, body_json = ? WHERE resource_type = ? AND id = ?",
            (version, stored["meta"]["lastUpdated"], json.dumps(stored), resource_type, resource_id),
        )
        return stored

    def delete(self, resource_type: str, resource_id: str) -> None:
        con = self._connect()
        try:
            cur = con.execute(
                "DELETE FROM resources WHERE resource_type = ? AND id = ?",
                (resource_type, resource_id),
            )
            con.commit()
            deleted = cur.rowcount
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            con.close()
        if not deleted:
            raise RecordNotFound(resource_type, resource_id)

    def search(self, resource_type: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        rows = self._execute(
            "SELECT body_json FROM resources WHERE resource_type = ? ORDER BY seq",
            (resource_type,),
        )
        records = [json.loads(r[0]) for r in rows]
        return [r for r in records if matches_filters(r, filters)]

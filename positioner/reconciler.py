# positioner/reconciler.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from positioner.codec import EXTENSIONS, record_barcode
from positioner.store import StoreError
from positioner.workflow import PositionerWorkflow

logger = logging.getLogger(__name__)

_PATIENT_URL = EXTENSIONS["current_patient"][0]
_OPENED_URL = EXTENSIONS["opened_at"][0]


@dataclass
class ReconcileReport:
    groups: int = 0
    kept: Dict[str, str] = field(default_factory=dict)       # barcode -> kept id
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)     # id -> error
    error: str = ""


def _has_extension(record: Dict[str, Any], url: str) -> bool:
    return any(ext.get("url") == url for ext in record.get("extension") or [])


def keeper_rank(record: Dict[str, Any]) -> Tuple[int, int]:
    """Lower sorts first: assigned records, then activated ones."""
    return (
        0 if _has_extension(record, _PATIENT_URL) else 1,
        0 if _has_extension(record, _OPENED_URL) else 1,
    )


def pick_keeper(records: List[Dict[str, Any]]) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    # sorted() is stable, so ties keep store order
    ranked = sorted(records, key=keeper_rank)
    return ranked[0], ranked[1:]


class DuplicateReconciler:
    """
    Removes duplicate positioner records that share a barcode (left behind
    by concurrent first scans). Keeps the best-informed record per barcode
    and deletes the rest. Safe to re-run.
    """

    def __init__(self, workflow: PositionerWorkflow) -> None:
        self.workflow = workflow

    def group_by_barcode(self, records: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        groups: Dict[str, List[Dict[str, Any]]] = {}
        for record in records:
            barcode = record_barcode(record)
            if barcode:
                groups.setdefault(barcode, []).append(record)
        return groups

    def reconcile(self) -> ReconcileReport:
        report = ReconcileReport()
        try:
            records = self.workflow.list_records()
        except StoreError as e:
            logger.error("Duplicate cleanup could not list positioners: %s", e)
            report.error = str(e)
            return report

        for barcode, group in self.group_by_barcode(records).items():
            report.groups += 1
            if len(group) < 2:
                continue

            logger.info("Found %d duplicates for barcode: %s", len(group), barcode)
            keep, extras = pick_keeper(group)
            report.kept[barcode] = keep["id"]
            logger.info("Keeping positioner: %s", keep["id"])

            for record in extras:
                resource_id = record["id"]
                try:
                    self.workflow.store.delete(record.get("resourceType") or self.workflow.resource_type, resource_id)
                except StoreError as e:
                    logger.warning("Failed to delete duplicate positioner %s: %s", resource_id, e)
                    report.failed[resource_id] = str(e)
                    continue
                logger.info("Deleted duplicate positioner: %s", resource_id)
                report.deleted.append(resource_id)

        return report

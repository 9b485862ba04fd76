# positioner/sweeper.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from positioner import lifecycle
from positioner.codec import CodecError, decode, record_barcode
from positioner.store import StoreError
from positioner.workflow import EventType, PositionerWorkflow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    discarded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)   # barcode/id -> error
    error: Optional[str] = None


class ExpirationSweeper:
    """
    Enforces the 90-day rule: every non-discarded positioner past its
    expiration date is discarded. Best effort; one unit failing does not
    stop the others, and re-running is a no-op for discarded units.
    """

    def __init__(self, workflow: PositionerWorkflow, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.workflow = workflow
        self._clock = clock

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        t = self.workflow.now(now or (self._clock() if self._clock else None))
        report = SweepReport()

        try:
            records = self.workflow.list_records()
        except StoreError as e:
            logger.error("Expiration sweep could not list positioners: %s", e)
            report.error = str(e)
            return report

        for record in records:
            key = record_barcode(record) or record.get("id") or "?"
            try:
                view = decode(record)
            except CodecError as e:
                logger.warning("Skipping unreadable positioner %s: %s", key, e)
                report.failed[key] = str(e)
                continue

            if view.is_terminal:
                continue
            report.checked += 1
            if not lifecycle.is_expired(view, t):
                continue

            logger.info("Auto-discarding expired positioner: %s", key)
            result = self.workflow.discard(record, now=t, event=EventType.AUTO_DISCARD)
            if result.success:
                report.discarded.append(key)
            else:
                logger.warning("Failed to discard expired positioner %s: %s", key, result.error)
                report.failed[key] = result.error or result.reason

        return report

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
import yaml


@dataclass(frozen=True)
class SystemConfig:
    expiration_days: int = 90
    default_rotation_interval_hours: int = 6
    default_postpone_minutes: int = 30
    overdue_threshold_minutes: int = 30

    resource_type: str = "Device"
    device_type_code: str = "fluidized-positioner"

    sweep_interval_seconds: int = 300
    reconcile_interval_seconds: int = 0
    reconcile_on_start: bool = True

    store_db_path: str = "data/positioners.sqlite"

    log_level: str = "INFO"
    db_path: str = "logs/audit.sqlite"
    event_log_path: str = "logs/events.log"
    decision_log_path: str = "logs/decisions.log"


def load_system_config(path: Optional[str] = "config/system_config.yaml") -> SystemConfig:
    if path is None:
        return SystemConfig()

    with open(path, "r", encoding="utf-8") as f:
        cfg: Dict[str, Any] = yaml.safe_load(f) or {}

    life = cfg.get("lifecycle", {})
    device = cfg.get("device", {})
    schedule = cfg.get("schedule", {})
    store = cfg.get("store", {})
    logging = cfg.get("logging", {})

    return SystemConfig(
        expiration_days=int(life.get("expiration_days", 90)),
        default_rotation_interval_hours=int(life.get("default_rotation_interval_hours", 6)),
        default_postpone_minutes=int(life.get("default_postpone_minutes", 30)),
        overdue_threshold_minutes=int(life.get("overdue_threshold_minutes", 30)),

        resource_type=str(device.get("resource_type", "Device")),
        device_type_code=str(device.get("type_code", "fluidized-positioner")),

        sweep_interval_seconds=int(schedule.get("sweep_interval_seconds", 300)),
        reconcile_interval_seconds=int(schedule.get("reconcile_interval_seconds", 0)),
        reconcile_on_start=bool(schedule.get("reconcile_on_start", True)),

        store_db_path=str(store.get("db_path", "data/positioners.sqlite")),

        log_level=str(logging.get("level", "INFO")).upper(),
        db_path=str(logging.get("db_path", "logs/audit.sqlite")),
        event_log_path=str(logging.get("event_log_path", "logs/events.log")),
        decision_log_path=str(logging.get("decision_log_path", "logs/decisions.log")),
    )

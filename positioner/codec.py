# positioner/codec.py
from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

_FHIR_BASE = "https://example.com/fhir"

BARCODE_SYSTEM = f"{_FHIR_BASE}/positioner-barcode"
DEVICE_TYPE_SYSTEM = f"{_FHIR_BASE}/device-type"
DEVICE_TYPE_CODE = "fluidized-positioner"
DEVICE_TYPE_DISPLAY = "Fluidized Positioner"

RECORD_ACTIVE = "active"
RECORD_INACTIVE = "inactive"

# view field -> (extension url, FHIR value key)
EXTENSIONS: Dict[str, Tuple[str, str]] = {
    "opened_at": (f"{_FHIR_BASE}/positioner-opened-at", "valueDateTime"),
    "expires_at": (f"{_FHIR_BASE}/positioner-expires-at", "valueDateTime"),
    "current_patient": (f"{_FHIR_BASE}/current-patient", "valueReference"),
    "assigned_at": (f"{_FHIR_BASE}/assigned-at", "valueDateTime"),
    "rotation_interval_hours": (f"{_FHIR_BASE}/rotation-interval-hours", "valueInteger"),
    "next_rotation_at": (f"{_FHIR_BASE}/next-rotation-at", "valueDateTime"),
    "last_rotated_at": (f"{_FHIR_BASE}/last-rotated-at", "valueDateTime"),
}


class CodecError(ValueError):
    """Raised when a recognized extension carries a malformed value."""


@dataclass(frozen=True)
class PatientRef:
    reference: str                # "Patient/<id>"
    display: Optional[str] = None


@dataclass(frozen=True)
class PositionerView:
    """
    Typed view of a positioner Device record.
    None always means "absent" (the extension is not on the record).
    """
    id: Optional[str] = None
    barcode: Optional[str] = None
    record_status: str = RECORD_ACTIVE
    opened_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    current_patient: Optional[PatientRef] = None
    assigned_at: Optional[datetime] = None
    rotation_interval_hours: Optional[int] = None
    next_rotation_at: Optional[datetime] = None
    last_rotated_at: Optional[datetime] = None

    @property
    def is_assigned(self) -> bool:
        return self.current_patient is not None

    @property
    def is_terminal(self) -> bool:
        return self.record_status == RECORD_INACTIVE


# -------------------------------
# Value conversion
# -------------------------------

def parse_datetime(value: str) -> datetime:
    try:
        t = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        raise CodecError(f"invalid dateTime: {value!r}") from e
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    return t


def format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def patient_reference(patient: Union[PatientRef, Dict[str, Any], str]) -> PatientRef:
    """Build a PatientRef from a Patient resource, a reference string, or a PatientRef."""
    if isinstance(patient, PatientRef):
        return patient
    if isinstance(patient, str):
        ref = patient if "/" in patient else f"Patient/{patient}"
        return PatientRef(reference=ref)
    if isinstance(patient, dict) and patient.get("id"):
        return PatientRef(reference=f"Patient/{patient['id']}", display=_patient_display(patient))
    raise ValueError("patient must be a PatientRef, a reference string or a Patient resource with an id")


def _patient_display(patient: Dict[str, Any]) -> Optional[str]:
    names = patient.get("name") or []
    if not names:
        return None
    name = names[0]
    if name.get("text"):
        return name["text"]
    parts = list(name.get("given") or [])
    if name.get("family"):
        parts.append(name["family"])
    return " ".join(parts) or None


def _to_fhir(field: str, value: Any) -> Any:
    _, value_key = EXTENSIONS[field]
    if value_key == "valueDateTime":
        return format_datetime(value)
    if value_key == "valueReference":
        ref: Dict[str, Any] = {"reference": value.reference}
        if value.display is not None:
            ref["display"] = value.display
        return ref
    return int(value)


def _from_fhir(field: str, ext: Dict[str, Any]) -> Any:
    _, value_key = EXTENSIONS[field]
    raw = ext.get(value_key)
    if raw is None:
        return None
    if value_key == "valueDateTime":
        return parse_datetime(raw)
    if value_key == "valueReference":
        if not isinstance(raw, dict) or not raw.get("reference"):
            raise CodecError(f"invalid reference for {field}: {raw!r}")
        return PatientRef(reference=raw["reference"], display=raw.get("display"))
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise CodecError(f"invalid integer for {field}: {raw!r}")
    return raw


# -------------------------------
# Record helpers
# -------------------------------

def record_barcode(record: Dict[str, Any]) -> Optional[str]:
    identifiers = record.get("identifier") or []
    if not identifiers:
        return None
    return identifiers[0].get("value")


def is_positioner(record: Dict[str, Any], type_code: str = DEVICE_TYPE_CODE) -> bool:
    codings = (record.get("type") or {}).get("coding") or []
    return any(c.get("code") == type_code for c in codings)


def new_positioner_record(barcode: str, type_code: str = DEVICE_TYPE_CODE) -> Dict[str, Any]:
    return {
        "resourceType": "Device",
        "status": RECORD_ACTIVE,
        "identifier": [{"system": BARCODE_SYSTEM, "value": barcode}],
        "type": {
            "coding": [{"system": DEVICE_TYPE_SYSTEM, "code": type_code, "display": DEVICE_TYPE_DISPLAY}],
        },
        "extension": [],
    }


# -------------------------------
# Codec
# -------------------------------

def decode(record: Dict[str, Any]) -> PositionerView:
    by_url = {ext.get("url"): ext for ext in record.get("extension") or []}
    values: Dict[str, Any] = {}
    for field, (url, _) in EXTENSIONS.items():
        ext = by_url.get(url)
        values[field] = _from_fhir(field, ext) if ext is not None else None

    return PositionerView(
        id=record.get("id"),
        barcode=record_barcode(record),
        record_status=record.get("status") or RECORD_ACTIVE,
        **values,
    )


def encode(view: PositionerView, base_record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Write the view onto a copy of base_record.
    Recognized extensions are replaced or removed; everything else on the
    base record (unknown extensions, meta, type, ...) is kept as-is.
    """
    record = copy.deepcopy(base_record)

    if view.id is not None:
        record["id"] = view.id
    record["status"] = view.record_status

    if view.barcode is not None:
        identifiers: List[Dict[str, Any]] = list(record.get("identifier") or [])
        if identifiers:
            identifiers[0] = {**identifiers[0], "value": view.barcode}
        else:
            identifiers.append({"system": BARCODE_SYSTEM, "value": view.barcode})
        record["identifier"] = identifiers

    extensions: List[Dict[str, Any]] = list(record.get("extension") or [])
    for field, (url, value_key) in EXTENSIONS.items():
        value = getattr(view, field)
        idx = next((i for i, ext in enumerate(extensions) if ext.get("url") == url), None)
        if value is None:
            if idx is not None:
                extensions = [ext for ext in extensions if ext.get("url") != url]
            continue
        new_ext = {"url": url, value_key: _to_fhir(field, value)}
        if idx is None:
            extensions.append(new_ext)
        else:
            extensions[idx] = new_ext
            # drop any stray duplicates of the same url
            extensions = [ext for i, ext in enumerate(extensions) if i == idx or ext.get("url") != url]

    record["extension"] = extensions
    return record

# positioner/store.py
from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol


class StoreError(Exception):
    """Transport or persistence failure raised by a resource store."""


class RecordNotFound(StoreError):
    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(f"{resource_type}/{resource_id} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id


class ResourceStore(Protocol):
    """
    Generic typed-record store (FHIR-server-like).

    Records are plain dicts carrying "resourceType" and a store-assigned "id".
    Search filters are top-level field equality only; no filter lists every
    record of the type in creation order.
    """

    def create(self, resource_type: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    def read(self, resource_type: str, resource_id: str) -> Dict[str, Any]: ...

    def update(self, record: Dict[str, Any]) -> Dict[str, Any]: ...

    def delete(self, resource_type: str, resource_id: str) -> None: ...

    def search(self, resource_type: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]: ...


def matches_filters(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(record.get(k) == v for k, v in filters.items())


def stamp_meta(record: Dict[str, Any], version: int) -> Dict[str, Any]:
    meta = dict(record.get("meta") or {})
    meta["versionId"] = str(version)
    meta["lastUpdated"] = datetime.now(timezone.utc).isoformat()
    record["meta"] = meta
    return record


class InMemoryResourceStore:
    """
    Process-local store used by tests and demos.
    Copies records on the way in and out so callers never share
    mutable state with the store (same behaviour as a remote server).
    """

    def __init__(self) -> None:
        # resource_type -> id -> record (dicts keep creation order)
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[str, int] = {}

    def create(self, resource_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(data)
        record["resourceType"] = resource_type
        record["id"] = uuid.uuid4().hex
        self._versions[record["id"]] = 1
        stamp_meta(record, 1)
        self._records.setdefault(resource_type, {})[record["id"]] = record
        return copy.deepcopy(record)

    def read(self, resource_type: str, resource_id: str) -> Dict[str, Any]:
        record = self._records.get(resource_type, {}).get(resource_id)
        if record is None:
            raise RecordNotFound(resource_type, resource_id)
        return copy.deepcopy(record)

    def update(self, record: Dict[str, Any]) -> Dict[str, Any]:
        resource_type = record.get("resourceType")
        resource_id = record.get("id")
        if not resource_type or not resource_id:
            raise StoreError("update requires resourceType and id")

        bucket = self._records.get(resource_type, {})
        if resource_id not in bucket:
            raise RecordNotFound(resource_type, resource_id)

        version = self._versions[resource_id] + 1
        self._versions[resource_id] = version
        stored = stamp_meta(copy.deepcopy(record), version)
        bucket[resource_id] = stored
        return copy.deepcopy(stored)

    def delete(self, resource_type: str, resource_id: str) -> None:
        bucket = self._records.get(resource_type, {})
        if resource_id not in bucket:
            raise RecordNotFound(resource_type, resource_id)
        del bucket[resource_id]
        self._versions.pop(resource_id, None)

    def search(self, resource_type: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        bucket = self._records.get(resource_type, {})
        return [copy.deepcopy(r) for r in bucket.values() if matches_filters(r, filters)]

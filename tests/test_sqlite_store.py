import pytest

from positioner.store import RecordNotFound, StoreError
from positioner.sweeper import ExpirationSweeper
from positioner.workflow import PositionerWorkflow
from server.sqlite_store import SqliteResourceStore


@pytest.fixture
def sqlite_store(tmp_path):
    return SqliteResourceStore(str(tmp_path / "data" / "store.sqlite"))


def test_create_read_update_delete(sqlite_store):
    created = sqlite_store.create("Device", {"status": "active"})
    assert created["resourceType"] == "Device"
    assert created["meta"]["versionId"] == "1"
    assert sqlite_store.read("Device", created["id"]) == created

    updated = sqlite_store.update({**created, "status": "inactive"})
    assert updated["meta"]["versionId"] == "2"
    assert sqlite_store.read("Device", created["id"])["status"] == "inactive"

    sqlite_store.delete("Device", created["id"])
    with pytest.raises(RecordNotFound):
        sqlite_store.read("Device", created["id"])
    with pytest.raises(RecordNotFound):
        sqlite_store.delete("Device", created["id"])


def test_update_requires_existing_record(sqlite_store):
    with pytest.raises(RecordNotFound):
        sqlite_store.update({"resourceType": "Device", "id": "missing"})
    with pytest.raises(StoreError):
        sqlite_store.update({"status": "active"})


def test_search_filters_and_keeps_creation_order(sqlite_store):
    a = sqlite_store.create("Device", {"status": "active"})
    b = sqlite_store.create("Device", {"status": "inactive"})
    c = sqlite_store.create("Device", {"status": "active"})
    sqlite_store.create("Patient", {"status": "active"})

    assert [r["id"] for r in sqlite_store.search("Device")] == [a["id"], b["id"], c["id"]]
    assert [r["id"] for r in sqlite_store.search("Device", {"status": "active"})] == [a["id"], c["id"]]


def test_workflow_runs_on_sqlite(sqlite_store, clock):
    workflow = PositionerWorkflow(sqlite_store, clock=clock)
    result = workflow.scan_and_activate("POS-1", "Patient/A", 6)
    assert result.success

    clock.advance(days=95)
    assert ExpirationSweeper(workflow).sweep().discarded == ["POS-1"]
    assert workflow.find_by_barcode("POS-1").record_status == "inactive"

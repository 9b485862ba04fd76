import pytest

from positioner.codec import new_positioner_record
from positioner.reconciler import DuplicateReconciler
from positioner.store import RecordNotFound


def _ids(store):
    return [r["id"] for r in store.search("Device")]


def test_keeps_assigned_copy(workflow, store):
    unassigned = workflow.create("POS-1")
    assigned = workflow.create("POS-1")
    workflow.assign(assigned, "Patient/A", 6)

    report = DuplicateReconciler(workflow).reconcile()

    assert report.kept == {"POS-1": assigned["id"]}
    assert report.deleted == [unassigned["id"]]
    assert _ids(store) == [assigned["id"]]
    with pytest.raises(RecordNotFound):
        store.read("Device", unassigned["id"])


def test_prefers_activated_copy(workflow, store):
    blank = store.create("Device", new_positioner_record("POS-2"))
    opened = workflow.create("POS-2")

    report = DuplicateReconciler(workflow).reconcile()

    assert report.kept == {"POS-2": opened["id"]}
    assert report.deleted == [blank["id"]]


def test_ties_keep_first_in_store_order(workflow):
    first = workflow.create("POS-3")
    second = workflow.create("POS-3")
    third = workflow.create("POS-3")

    report = DuplicateReconciler(workflow).reconcile()

    assert report.kept == {"POS-3": first["id"]}
    assert report.deleted == [second["id"], third["id"]]


def test_singletons_untouched_and_rerun_is_noop(workflow, store):
    workflow.create("POS-4")
    workflow.create("POS-5")
    workflow.create("POS-5")
    reconciler = DuplicateReconciler(workflow)

    first = reconciler.reconcile()
    assert first.groups == 2
    assert len(first.deleted) == 1

    second = reconciler.reconcile()
    assert second.deleted == []
    assert second.kept == {}
    assert len(_ids(store)) == 2


def test_ignores_other_device_types(workflow, store):
    workflow.create("POS-6")
    pump = store.create("Device", {
        "identifier": [{"value": "POS-6"}],
        "type": {"coding": [{"code": "infusion-pump"}]},
    })

    report = DuplicateReconciler(workflow).reconcile()

    assert report.deleted == []
    assert pump["id"] in _ids(store)


def test_delete_failure_is_logged_and_skipped(workflow, store):
    keep = workflow.create("POS-7")
    stuck = workflow.create("POS-7")
    gone = workflow.create("POS-7")
    store.fail_delete_ids.add(stuck["id"])

    report = DuplicateReconciler(workflow).reconcile()

    assert report.kept == {"POS-7": keep["id"]}
    assert report.deleted == [gone["id"]]
    assert stuck["id"] in report.failed

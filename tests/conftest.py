from datetime import datetime, timedelta, timezone

import pytest

from positioner.store import InMemoryResourceStore, StoreError
from positioner.workflow import PositionerWorkflow


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FlakyStore(InMemoryResourceStore):
    """In-memory store that fails on demand for selected ids."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_update_ids = set()
        self.fail_delete_ids = set()
        self.fail_search = False

    def update(self, record):
        if record.get("id") in self.fail_update_ids:
            raise StoreError("store unavailable")
        return super().update(record)

    def delete(self, resource_type, resource_id):
        if resource_id in self.fail_delete_ids:
            raise StoreError("store unavailable")
        return super().delete(resource_type, resource_id)

    def search(self, resource_type, filters=None):
        if self.fail_search:
            raise StoreError("store unavailable")
        return super().search(resource_type, filters)


@pytest.fixture
def d0():
    return datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(d0):
    return FakeClock(d0)


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def results():
    return []


@pytest.fixture
def workflow(store, clock, results):
    return PositionerWorkflow(store, clock=clock, on_result=results.append)

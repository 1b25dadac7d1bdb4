"""Unit tests for ticket id allocation."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from tasksync.guardrails.errors import AllocationConflict
from tasksync.models.schemas import Task
from tasksync.store.allocator import IdentifierAllocator
from tasksync.store.counter_store import FileCounterStore, InMemoryCounterStore
from tasksync.store.task_store import InMemoryTaskStore


def _store(*tickets):
    return InMemoryTaskStore([Task(ticket_id=t, description="x") for t in tickets])


def test_initialize_seeds_from_highest_ticket():
    counters = InMemoryCounterStore()
    alloc = IdentifierAllocator(counters, _store("SP-3", "SP-12", "OPS-40"), prefix="SP", key="k")
    assert alloc.max_existing_number() == 12
    assert alloc.initialize() == 12
    assert alloc.allocate_next() == "SP-13"


def test_initialize_is_idempotent():
    counters = InMemoryCounterStore({"k": 50})
    alloc = IdentifierAllocator(counters, _store("SP-3"), prefix="sp", key="k")
    assert alloc.initialize() == 50
    assert alloc.initialize() == 50
    assert alloc.allocate_next() == "SP-51"


def test_empty_store_starts_at_one():
    alloc = IdentifierAllocator(InMemoryCounterStore(), prefix="SP", key="k")
    alloc.initialize()
    assert [alloc.allocate_next(), alloc.allocate_next()] == ["SP-1", "SP-2"]


def test_concurrent_allocations_across_allocators_are_unique(tmp_path):
    path = str(tmp_path / "counters.json")
    # separate allocators and stores over one file, as two processes would have
    allocators = [IdentifierAllocator(FileCounterStore(path), prefix="SP", key="k") for _ in range(4)]
    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(lambda i: allocators[i % 4].allocate_next(), range(80)))
    assert len(set(ids)) == 80
    assert sorted(int(i.split("-")[1]) for i in ids) == list(range(1, 81))


def test_shared_allocator_under_threads():
    alloc = IdentifierAllocator(InMemoryCounterStore(), prefix="SP", key="k")
    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(lambda _: alloc.allocate_next(), range(200)))
    assert len(set(ids)) == 200


class _StuckCounter(InMemoryCounterStore):
    def atomic_increment(self, key):
        return 7


def test_repeated_value_is_a_conflict():
    alloc = IdentifierAllocator(_StuckCounter(), prefix="SP", key="k")
    assert alloc.allocate_next() == "SP-7"
    with pytest.raises(AllocationConflict):
        alloc.allocate_next()


def test_reset():
    alloc = IdentifierAllocator(InMemoryCounterStore(), prefix="SP", key="k")
    alloc.allocate_next()
    alloc.allocate_next()
    assert alloc.reset(0) == 0
    assert alloc.allocate_next() == "SP-1"
    with pytest.raises(ValueError):
        alloc.reset(-1)

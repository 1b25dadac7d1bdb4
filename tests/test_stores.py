"""Unit tests for task and counter stores."""
import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from tasksync.models.schemas import Task, TaskStatus
from tasksync.store.counter_store import FileCounterStore, InMemoryCounterStore
from tasksync.store.task_store import InMemoryTaskStore, JsonFileTaskStore


def _task(ticket, status=TaskStatus.TODO):
    return Task(ticket_id=ticket, title=f"Task {ticket}", description="desc", assignee="Mike", status=status)


def test_insert_and_find_active():
    store = InMemoryTaskStore([_task("SP-1"), _task("SP-2", TaskStatus.COMPLETED)])
    assert [t.ticket_id for t in store.find_active_tasks()] == ["SP-1"]
    assert len(store.all_tasks()) == 2
    assert store.get("SP-2").status == TaskStatus.COMPLETED
    assert store.get("SP-9") is None


def test_duplicate_ticket_rejected():
    store = InMemoryTaskStore([_task("SP-1")])
    with pytest.raises(ValueError):
        store.insert(_task("SP-1"))


def test_update_keeps_ticket_id_and_revalidates():
    store = InMemoryTaskStore([_task("SP-1")])
    updated = store.update_by_ticket_id("SP-1", {"ticket_id": "SP-99", "time_spent": 4.0, "status": "In-progress"})
    assert updated.ticket_id == "SP-1"
    assert updated.time_spent == 4.0
    assert updated.status == TaskStatus.IN_PROGRESS
    with pytest.raises(KeyError):
        store.update_by_ticket_id("SP-99", {})
    with pytest.raises(Exception):
        store.update_by_ticket_id("SP-1", {"time_spent": -1})


def test_update_keeps_embedding():
    t = _task("SP-1")
    t.embedding = [0.1, 0.2]
    store = InMemoryTaskStore([t])
    assert store.update_by_ticket_id("SP-1", {"description": "new"}).embedding == [0.1, 0.2]


def test_json_file_store_round_trips(tmp_path):
    path = tmp_path / "tasks.json"
    store = JsonFileTaskStore(str(path))
    store.insert(_task("SP-1"))
    store.update_by_ticket_id("SP-1", {"status": TaskStatus.COMPLETED})

    data = json.loads(path.read_text())
    assert data["tasks"][0]["status"] == "Completed"
    assert "embedding" not in data["tasks"][0]

    reloaded = JsonFileTaskStore(str(path))
    assert reloaded.get("SP-1").status == TaskStatus.COMPLETED


@pytest.mark.parametrize("factory", [lambda p: InMemoryCounterStore(), lambda p: FileCounterStore(str(p / "counters.json"))])
def test_counter_operations(tmp_path, factory):
    store = factory(tmp_path)
    assert store.get("c") is None
    assert store.create_if_absent("c", 10) is True
    assert store.create_if_absent("c", 0) is False
    assert store.atomic_increment("c") == 11
    store.set("c", 3)
    assert store.get("c") == 3


@pytest.mark.parametrize("factory", [lambda p: InMemoryCounterStore(), lambda p: FileCounterStore(str(p / "counters.json"))])
def test_concurrent_increments_are_unique(tmp_path, factory):
    store = factory(tmp_path)
    with ThreadPoolExecutor(max_workers=8) as pool:
        values = list(pool.map(lambda _: store.atomic_increment("c"), range(100)))
    assert sorted(values) == list(range(1, 101))
    assert store.get("c") == 100


def test_file_counter_survives_new_instance(tmp_path):
    path = str(tmp_path / "counters.json")
    FileCounterStore(path).atomic_increment("c")
    assert FileCounterStore(path).atomic_increment("c") == 2

"""
Reference task stores. The engine only needs find_active_tasks, insert, update and update_by_ticket_id; all_tasks and get serve index rebuilds and the allocator seed.
"""
import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional

from tasksync.models.schemas import Task, TaskStatus

logger = logging.getLogger(__name__)


class InMemoryTaskStore:
    """Tasks keyed by store id ("task-<n>") with a ticket_id -> id index. Each insert or update replaces one record under a lock, so a reader never sees a half-applied patch."""

    def __init__(self, tasks: Optional[List[Task]] = None):
        self._lock = threading.RLock()
        self._records: Dict[str, Task] = {}
        self._by_ticket: Dict[str, str] = {}
        self._seq = 0
        for t in tasks or []:
            self.insert(t)

    def _next_id(self) -> str:
        self._seq += 1
        return f"task-{self._seq}"

    def find_active_tasks(self) -> List[Task]:
        with self._lock:
            return [t for t in self._records.values() if t.status != TaskStatus.COMPLETED]

    def all_tasks(self) -> List[Task]:
        with self._lock:
            return list(self._records.values())

    def get(self, ticket_id: str) -> Optional[Task]:
        with self._lock:
            store_id = self._by_ticket.get(ticket_id)
            return self._records.get(store_id) if store_id else None

    def insert(self, task: Task) -> str:
        with self._lock:
            if task.ticket_id in self._by_ticket:
                raise ValueError(f"ticket id {task.ticket_id} already exists")
            store_id = self._next_id()
            self._records[store_id] = task
            self._by_ticket[task.ticket_id] = store_id
            self._persist()
            return store_id

    def update(self, store_id: str, patch: Dict[str, Any]) -> Task:
        with self._lock:
            current = self._records.get(store_id)
            if current is None:
                raise KeyError(f"no task with id {store_id}")
            # ticket ids never change
            fields = {k: v for k, v in patch.items() if k != "ticket_id"}
            updated = Task.model_validate({**current.model_dump(), **fields, "embedding": fields.get("embedding", current.embedding)})
            self._records[store_id] = updated
            self._persist()
            return updated

    def update_by_ticket_id(self, ticket_id: str, patch: Dict[str, Any]) -> Task:
        with self._lock:
            store_id = self._by_ticket.get(ticket_id)
            if store_id is None:
                raise KeyError(f"no task with ticket id {ticket_id}")
            return self.update(store_id, patch)

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held after every write."""


class JsonFileTaskStore(InMemoryTaskStore):
    """InMemoryTaskStore persisted to a JSON file after every write (atomic replace). Embeddings are not persisted; the similarity index keeps its own vectors.
    Why available: Runs the engine and the HTTP transport without a database."""

    def __init__(self, path: str):
        self.path = path
        self._loading = True
        super().__init__()
        if os.path.isfile(path):
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            for record in data.get("tasks", []):
                self.insert(Task.model_validate(record))
        self._loading = False
        logger.info("task_store_loaded", extra={"path": path, "tasks": len(self._records)})

    def _persist(self) -> None:
        if self._loading:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"tasks": [t.model_dump(mode="json") for t in self._records.values()]}, f, indent=2)
        os.replace(tmp, self.path)

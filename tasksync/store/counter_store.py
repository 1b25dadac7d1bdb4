"""
Counter stores backing the identifier allocator. Every increment is a single atomic operation of the store.
"""
import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

logger = logging.getLogger(__name__)


class InMemoryCounterStore:
    """Process-local counters guarded by one lock. Used in tests and single-process deployments."""

    def __init__(self, initial: Optional[Dict[str, int]] = None):
        self._values: Dict[str, int] = dict(initial or {})
        self._lock = threading.Lock()

    def atomic_increment(self, key: str) -> int:
        with self._lock:
            self._values[key] = self._values.get(key, 0) + 1
            return self._values[key]

    def get(self, key: str) -> Optional[int]:
        with self._lock:
            return self._values.get(key)

    def create_if_absent(self, key: str, value: int) -> bool:
        with self._lock:
            if key in self._values:
                return False
            self._values[key] = value
            return True

    def set(self, key: str, value: int) -> None:
        with self._lock:
            self._values[key] = value


class FileCounterStore:
    """Counters in one JSON document; each operation holds an exclusive flock on a sibling lock file for its whole read-modify-write, so separate processes (a scheduled run and a manual run) never hand out the same value.
    Why available: Durable counter for deployments without a document database."""

    def __init__(self, path: str):
        self.path = path
        self._lock_path = path + ".lock"
        self._thread_lock = threading.Lock()
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    @contextmanager
    def _locked(self) -> Iterator[Dict[str, int]]:
        with self._thread_lock, open(self._lock_path, "a+") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                values = self._read()
                before = dict(values)
                yield values
                if values != before:
                    self._write(values)
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self) -> Dict[str, int]:
        if not os.path.isfile(self.path):
            return {}
        with open(self.path, encoding="utf-8") as f:
            raw = f.read().strip()
        if not raw:
            return {}
        data = json.loads(raw)
        return {str(k): int(v) for k, v in data.items()}

    def _write(self, values: Dict[str, int]) -> None:
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(values, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def atomic_increment(self, key: str) -> int:
        with self._locked() as values:
            values[key] = values.get(key, 0) + 1
            return values[key]

    def get(self, key: str) -> Optional[int]:
        with self._locked() as values:
            return values.get(key)

    def create_if_absent(self, key: str, value: int) -> bool:
        with self._locked() as values:
            if key in values:
                return False
            values[key] = value
            logger.info("counter_created", extra={"key": key, "value": value})
            return True

    def set(self, key: str, value: int) -> None:
        with self._locked() as values:
            values[key] = value

import logging
import threading
from typing import Optional, Set

from tasksync.core.config import settings
from tasksync.guardrails.errors import AllocationConflict
from tasksync.utils.text import ticket_number

logger = logging.getLogger(__name__)


class IdentifierAllocator:
    """Hands out PREFIX-<n> ticket ids from one counter. allocate_next is a single atomic_increment on the counter store, never a read followed by a write, so overlapping runs cannot receive the same id. Gaps (an id allocated by a run that later aborted) are acceptable.
    Why available: Only component of the engine with a real cross-process race."""

    def __init__(self, counter_store, task_store=None, *, prefix: Optional[str] = None, key: Optional[str] = None):
        self.counter_store = counter_store
        self.task_store = task_store
        self.prefix = (prefix or settings.ticket_prefix).upper()
        self.key = key or settings.counter_key
        self._issued: Set[int] = set()
        self._seen_lock = threading.Lock()

    def format(self, n: int) -> str:
        return f"{self.prefix}-{n}"

    def max_existing_number(self) -> int:
        if self.task_store is None:
            return 0
        numbers = [
            ticket_number(t.ticket_id)
            for t in self.task_store.all_tasks()
            if t.ticket_id.upper().startswith(f"{self.prefix}-")
        ]
        return max((n for n in numbers if n is not None), default=0)

    def initialize(self) -> int:
        """Seed the counter from the highest existing ticket number (or 0) if it does not exist yet; an existing counter is left untouched. Returns the current count."""
        seed = self.max_existing_number()
        if self.counter_store.create_if_absent(self.key, seed):
            logger.info("counter_initialized", extra={"key": self.key, "seed": seed})
        return self.current_count()

    def allocate_next(self) -> str:
        n = self.counter_store.atomic_increment(self.key)
        with self._seen_lock:
            if n in self._issued:
                raise AllocationConflict(f"counter {self.key} returned {n} twice")
            self._issued.add(n)
        ticket_id = self.format(n)
        logger.info("ticket_allocated", extra={"ticket_id": ticket_id})
        return ticket_id

    def current_count(self) -> int:
        return int(self.counter_store.get(self.key) or 0)

    def reset(self, value: int = 0) -> int:
        """Operator reset: the next allocation returns PREFIX-{value+1}. Does not check existing tickets."""
        if value < 0:
            raise ValueError("counter value must be >= 0")
        self.counter_store.set(self.key, value)
        with self._seen_lock:
            # numbers above value are handed out again on purpose
            self._issued = {n for n in self._issued if n <= value}
        logger.warning("counter_reset", extra={"key": self.key, "value": value})
        return value

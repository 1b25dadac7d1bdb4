"""
Similarity index over task texts, backed by a Qdrant collection.

The task store stays authoritative: every entry here can be regenerated with rebuild().
Writers are not safe to run concurrently across processes; callers serialize runs per task store.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from qdrant_client import QdrantClient
from qdrant_client.http.models import FieldCondition, Filter, MatchValue, PointIdsList, PointStruct

from tasksync.core.config import settings
from tasksync.core.services import EmbeddingService
from tasksync.ingest.indexer import collection_exists, ensure_collection, get_qdrant, stable_point_id
from tasksync.models.schemas import Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class SimilarityHit:
    ticket_id: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def task_embedding_text(task: Task) -> str:
    """title + description with light context (assignee, type, status) to bias the vector toward the same owner and kind of work."""
    parts = [task.title.strip(), task.description.strip()]
    body = ". ".join(p for p in parts if p)
    return f"{body}\nAssignee: {task.assignee}\nType: {task.work_type.value}\nStatus: {task.status.value}"


def candidate_embedding_text(description: str, assignee: str = "", work_type: str = "", status: str = "") -> str:
    text = description.strip()
    if assignee:
        text += f"\nAssignee: {assignee}"
    if work_type:
        text += f"\nType: {work_type}"
    if status:
        text += f"\nStatus: {status}"
    return text


def task_metadata(task: Task) -> Dict[str, Any]:
    return {
        "ticket_id": task.ticket_id,
        "title": task.title,
        "assignee": task.assignee,
        "work_type": task.work_type.value,
        "status": task.status.value,
        "last_modified": task.last_modified.isoformat(),
    }


def _as_utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def recently_modified(tasks: Iterable[Task], days: Optional[int] = None, now: Optional[datetime] = None) -> List[Task]:
    """Tasks whose last_modified falls within the sync window (default settings.sync_window_days)."""
    window = timedelta(days=settings.sync_window_days if days is None else days)
    cutoff = _as_utc(now or datetime.now(timezone.utc)) - window
    return [t for t in tasks if _as_utc(t.last_modified) >= cutoff]


class SimilarityIndex:
    """Nearest-neighbour search over task embeddings (cosine). Search errors degrade to no matches and set `degraded`; write errors are logged, counted and reported through `degraded` as well.
    Why available: Second matching path of the reconciler, after explicit ticket ids."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        *,
        client: Optional[QdrantClient] = None,
        collection: Optional[str] = None,
        cache_ttl_seconds: Optional[int] = None,
    ):
        self.embedding_service = embedding_service
        self._client = client
        self.collection = collection or settings.task_collection
        self.cache_ttl_seconds = settings.index_cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds
        self.degraded = False
        self.last_error: Optional[str] = None
        self._write_lock = threading.Lock()
        self._versions: Dict[str, str] = {}
        self._versions_loaded_at: Optional[float] = None

    @property
    def client(self) -> QdrantClient:
        if self._client is None:
            self._client = get_qdrant()
        return self._client

    def _mark_degraded(self, event: str, **extra):
        self.degraded = True
        self.last_error = event
        logger.warning(event, exc_info=True, extra={"collection": self.collection, **extra})

    def reset_degraded(self) -> None:
        """Forget earlier failures; called at the start of each run so one outage is not reported forever."""
        self.degraded = False
        self.last_error = None

    # -------------------------
    # Writes
    # -------------------------

    def add(self, ticket_id: str, text: str, metadata: Optional[Dict[str, Any]] = None, vector: Optional[List[float]] = None) -> bool:
        """Embed text (unless a vector is given) and upsert it under ticket_id. Returns False and marks the index degraded on failure."""
        try:
            vec = vector or self.embedding_service.embed(text)
            with self._write_lock:
                ensure_collection(self.client, self.collection, len(vec))
                payload = {**(metadata or {}), "ticket_id": ticket_id, "text": text}
                self.client.upsert(
                    collection_name=self.collection,
                    points=[PointStruct(id=stable_point_id(ticket_id), vector=vec, payload=payload)],
                )
                if payload.get("last_modified"):
                    self._versions[ticket_id] = payload["last_modified"]
            return True
        except Exception:
            self._mark_degraded("similarity_index_add_failed", ticket_id=ticket_id)
            return False

    def add_task(self, task: Task, reuse_embedding: bool = False) -> bool:
        vector = task.embedding if reuse_embedding and task.embedding else None
        return self.add(task.ticket_id, task_embedding_text(task), task_metadata(task), vector=vector)

    def remove(self, ticket_id: str) -> bool:
        try:
            with self._write_lock:
                if collection_exists(self.client, self.collection):
                    self.client.delete(
                        collection_name=self.collection,
                        points_selector=PointIdsList(points=[stable_point_id(ticket_id)]),
                    )
                self._versions.pop(ticket_id, None)
            return True
        except Exception:
            self._mark_degraded("similarity_index_remove_failed", ticket_id=ticket_id)
            return False

    def rebuild(self, all_tasks: Iterable[Task]) -> int:
        """Drop the collection and re-add every task (stored embeddings are reused). Returns the number of tasks indexed."""
        tasks = list(all_tasks)
        try:
            with self._write_lock:
                if collection_exists(self.client, self.collection):
                    self.client.delete_collection(collection_name=self.collection)
                self._versions = {}
                self._versions_loaded_at = time.monotonic()
        except Exception:
            self._mark_degraded("similarity_index_rebuild_failed")
            return 0
        count = sum(1 for t in tasks if self.add_task(t, reuse_embedding=True))
        logger.info("similarity_index_rebuilt", extra={"collection": self.collection, "count": count, "tasks": len(tasks)})
        return count

    def synchronize(self, recently_modified_tasks: Iterable[Task]) -> int:
        """Re-embed tasks edited out of band: a task is re-added when it is missing from the index or its last_modified is newer than the indexed one. Never removes entries. Returns the number of tasks re-embedded.
        Why available: Tasks edited through another interface would otherwise be matched against stale text."""
        versions = self._indexed_versions()
        refreshed = 0
        for task in recently_modified_tasks:
            seen = versions.get(task.ticket_id)
            if seen is not None and _as_utc(datetime.fromisoformat(seen)) >= _as_utc(task.last_modified):
                continue
            if self.add_task(task):
                refreshed += 1
        if refreshed:
            logger.info("similarity_index_synchronized", extra={"collection": self.collection, "refreshed": refreshed})
        return refreshed

    def _indexed_versions(self) -> Dict[str, str]:
        """ticket_id -> last_modified as stored in the index, reloaded by scroll at most once per cache window."""
        fresh = (
            self._versions_loaded_at is not None
            and time.monotonic() - self._versions_loaded_at < self.cache_ttl_seconds
        )
        if fresh:
            return dict(self._versions)
        versions: Dict[str, str] = {}
        try:
            if collection_exists(self.client, self.collection):
                offset = None
                while True:
                    points, offset = self.client.scroll(
                        collection_name=self.collection,
                        limit=256,
                        offset=offset,
                        with_payload=True,
                        with_vectors=False,
                    )
                    for p in points or []:
                        payload = p.payload or {}
                        if payload.get("ticket_id") and payload.get("last_modified"):
                            versions[payload["ticket_id"]] = payload["last_modified"]
                    if offset is None:
                        break
        except Exception:
            self._mark_degraded("similarity_index_scroll_failed")
            return dict(self._versions)
        self._versions = versions
        self._versions_loaded_at = time.monotonic()
        return dict(versions)

    # -------------------------
    # Reads
    # -------------------------

    def search(
        self,
        query_text: str,
        k: int = 1,
        score_threshold: Optional[float] = None,
        *,
        open_only: bool = True,
        assignee: Optional[str] = None,
    ) -> List[SimilarityHit]:
        """Return up to k hits with cosine similarity at or above score_threshold (default settings.similarity_threshold), best first. Completed tasks are skipped unless open_only is False. Any failure returns [] and marks the index degraded."""
        threshold = settings.similarity_threshold if score_threshold is None else score_threshold
        if not (query_text or "").strip():
            return []
        try:
            if not collection_exists(self.client, self.collection):
                return []
            vec = self.embedding_service.embed(query_text)
            must = [FieldCondition(key="assignee", match=MatchValue(value=assignee))] if assignee else []
            must_not = (
                [FieldCondition(key="status", match=MatchValue(value=TaskStatus.COMPLETED.value))] if open_only else []
            )
            res = self.client.query_points(
                collection_name=self.collection,
                query=vec,
                limit=k,
                with_payload=True,
                query_filter=Filter(must=must or None, must_not=must_not or None),
                score_threshold=threshold,
            )
        except Exception:
            self._mark_degraded("similarity_search_failed", query_preview=query_text[:80])
            return []

        hits: List[SimilarityHit] = []
        for p in res.points or []:
            payload = p.payload or {}
            score = float(getattr(p, "score", 0.0) or 0.0)
            if payload.get("ticket_id") and score >= threshold:
                hits.append(SimilarityHit(ticket_id=payload["ticket_id"], similarity=score, metadata=payload))
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:k]

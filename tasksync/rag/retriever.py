"""
Transcript passage retrieval for grounding merged task descriptions.

Two stores hold embedded transcript chunks:
- ScopedChunkCache: in-memory, owned by one run, cleared when the run ends.
- TranscriptChunkStore: durable Qdrant collection spanning earlier meetings.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from qdrant_client import QdrantClient

from tasksync.core.config import settings
from tasksync.core.services import EmbeddingService
from tasksync.ingest.chunker import chunk_text, chunk_turns
from tasksync.ingest.indexer import (
    collection_exists,
    get_qdrant,
    transcript_filter,
    upsert_chunks,
)
from tasksync.ingest.parser import Turn
from tasksync.rag.context import pack_context

logger = logging.getLogger(__name__)

SCOPED_COLLECTION = "run_chunks"


def _point_to_chunk(p, scope: str) -> Dict[str, Any]:
    """Build chunk dict from a Qdrant point (payload + score)."""
    payload = p.payload or {}
    p_score = getattr(p, "score", None)
    return {
        "score": float(p_score) if p_score is not None else 0.0,
        "scope": scope,
        "transcript_id": payload.get("transcript_id"),
        "chunk_id": payload.get("chunk_id"),
        "chunk_index": payload.get("chunk_index"),
        "line_start": payload.get("line_start"),
        "line_end": payload.get("line_end"),
        "speakers": payload.get("speakers") or [],
        "text": payload.get("text", ""),
    }


def _search(
    client: QdrantClient,
    collection: str,
    vector: List[float],
    top_k: int,
    score_threshold: float,
    transcript_id: Optional[str],
    scope: str,
) -> List[Dict[str, Any]]:
    if not collection_exists(client, collection):
        return []
    res = client.query_points(
        collection_name=collection,
        query=vector,
        limit=top_k,
        with_payload=True,
        query_filter=transcript_filter(transcript_id) if transcript_id else None,
        score_threshold=score_threshold,
    )
    return [_point_to_chunk(p, scope) for p in res.points or []]


def _chunks_for(transcript_id: str, turns: Sequence[Turn]):
    return chunk_turns(
        transcript_id=transcript_id,
        turns=list(turns),
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )


class ScopedChunkCache:
    """Run-scoped chunk cache in an in-memory Qdrant instance. Nothing in it outlives the run that created it.
    Why available: Same-meeting enrichment must only see the current transcript, and concurrent runs must not see each other's chunks."""

    def __init__(self, embedding_service: EmbeddingService):
        self.embedding_service = embedding_service
        self._client: Optional[QdrantClient] = QdrantClient(":memory:")
        self.transcripts: set = set()

    def store(self, transcript_id: str, turns: Sequence[Turn]) -> int:
        if self._client is None:
            raise RuntimeError("scoped cache already cleared")
        count = upsert_chunks(
            _chunks_for(transcript_id, turns),
            embedding_service=self.embedding_service,
            client=self._client,
            collection=SCOPED_COLLECTION,
        )
        self.transcripts.add(transcript_id)
        return count

    def search(self, vector: List[float], transcript_id: str, top_k: int, score_threshold: float) -> List[Dict[str, Any]]:
        if self._client is None:
            return []
        return _search(self._client, SCOPED_COLLECTION, vector, top_k, score_threshold, transcript_id, "scoped")

    def clear(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self.transcripts.clear()

    @property
    def is_open(self) -> bool:
        return self._client is not None


class TranscriptChunkStore:
    """Durable cross-meeting chunk store. Re-indexing a transcript replaces its previous chunks."""

    def __init__(self, embedding_service: EmbeddingService, *, client: Optional[QdrantClient] = None, collection: Optional[str] = None):
        self.embedding_service = embedding_service
        self._client = client
        self.collection = collection or settings.transcript_collection

    @property
    def client(self) -> QdrantClient:
        if self._client is None:
            self._client = get_qdrant()
        return self._client

    def index_transcript(self, transcript_id: str, turns: Sequence[Turn]) -> int:
        return upsert_chunks(
            _chunks_for(transcript_id, turns),
            embedding_service=self.embedding_service,
            client=self.client,
            collection=self.collection,
            replace_transcript=transcript_id,
        )

    def index_text(self, transcript_id: str, text: str) -> int:
        """Index free text (meeting notes without speaker lines) under transcript_id."""
        return upsert_chunks(
            chunk_text(transcript_id, text, settings.chunk_size, settings.chunk_overlap),
            embedding_service=self.embedding_service,
            client=self.client,
            collection=self.collection,
            replace_transcript=transcript_id,
        )

    def search(self, vector: List[float], top_k: int, score_threshold: float, transcript_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return _search(self.client, self.collection, vector, top_k, score_threshold, transcript_id, "global")


@dataclass
class RetrievedContext:
    context: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    scope: str = "none"

    @property
    def source_ids(self) -> List[str]:
        return [s["chunk_id"] for s in self.sources if s.get("chunk_id")]


class ContextRetriever:
    """Retrieve the transcript passages most relevant to a task update. With a scope, the run's cached chunks of that transcript are searched first and the global store is the fallback; without one, only the global store is searched. Failures yield an empty context.
    Why available: Used only by the reconciler's merge step to ground descriptions in verbatim passages."""

    def __init__(self, embedding_service: EmbeddingService, global_store: Optional[TranscriptChunkStore] = None):
        self.embedding_service = embedding_service
        self.global_store = global_store

    def retrieve_context(
        self,
        query: str,
        *,
        scope_to_transcript_id: Optional[str] = None,
        cache: Optional[ScopedChunkCache] = None,
        top_k: Optional[int] = None,
        score_threshold: Optional[float] = None,
    ) -> RetrievedContext:
        k = top_k or settings.retrieve_top_k
        threshold = settings.rag_score_threshold if score_threshold is None else score_threshold
        if not (query or "").strip():
            return RetrievedContext(context="")
        try:
            vector = self.embedding_service.embed(query)
            found: List[Dict[str, Any]] = []
            scope = "none"
            if scope_to_transcript_id and cache is not None:
                found = cache.search(vector, scope_to_transcript_id, k, threshold)
                scope = "scoped"
            if not found and self.global_store is not None:
                found = self.global_store.search(vector, k, threshold)
                scope = "global"
        except Exception:
            logger.warning("context_retrieval_failed", exc_info=True, extra={"query_preview": query[:80]})
            return RetrievedContext(context="")
        if not found:
            return RetrievedContext(context="", scope=scope)
        return RetrievedContext(context=pack_context(found, max_chunks=k), sources=found, scope=scope)

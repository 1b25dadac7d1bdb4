import logging
import uuid
from itertools import islice
from typing import Iterable, Iterator, List, Optional

from qdrant_client import QdrantClient
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PointStruct,
    VectorParams,
)

from tasksync.core.config import settings
from tasksync.core.services import EmbeddingService
from .chunker import Chunk

logger = logging.getLogger(__name__)

NAMESPACE = uuid.UUID("5f0c7a52-9a51-4d2e-8f4e-6f1f3b7c2d10")


def stable_point_id(key: str) -> str:
    """Return a deterministic UUID string for a chunk id or ticket id (for Qdrant point id).
    Why available: Qdrant requires UUID or integer point ids; the same key always maps to the same point, so re-indexing upserts instead of duplicating."""
    return str(uuid.uuid5(NAMESPACE, key))


def get_qdrant() -> QdrantClient:
    """Return a Qdrant client: local on-disk mode when QDRANT_PATH is set, otherwise the configured QDRANT_URL.
    Why available: Used by the similarity index and the transcript chunk store to reach the vector store."""
    if settings.qdrant_path:
        return QdrantClient(path=settings.qdrant_path)
    return QdrantClient(url=settings.qdrant_url)


def collection_exists(client: QdrantClient, name: str) -> bool:
    return any(c.name == name for c in client.get_collections().collections)


def ensure_collection(client: QdrantClient, name: str, vector_size: int) -> None:
    """Create a cosine-distance collection if missing. Raises ValueError when an existing collection has another vector size, which happens after EMBEDDING_MODEL changes; /index/rebuild or a new collection name is then needed."""
    if not collection_exists(client, name):
        client.create_collection(
            collection_name=name,
            vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
        )
        logger.info("collection_created", extra={"collection": name, "vector_size": vector_size})
        return
    vectors = client.get_collection(name).config.params.vectors
    existing = getattr(vectors, "size", None)
    if existing is not None and existing != vector_size:
        raise ValueError(f"collection {name} holds {existing}-d vectors, embedder returned {vector_size}-d")


def transcript_filter(transcript_id: str) -> Filter:
    return Filter(must=[FieldCondition(key="transcript_id", match=MatchValue(value=transcript_id))])


def delete_transcript_chunks(client: QdrantClient, collection: str, transcript_id: str) -> None:
    if collection_exists(client, collection):
        client.delete(
            collection_name=collection,
            points_selector=FilterSelector(filter=transcript_filter(transcript_id)),
        )


def _batches(items: Iterable[Chunk], size: int) -> Iterator[List[Chunk]]:
    it = iter(items)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


def upsert_chunks(
    chunks: Iterable[Chunk],
    *,
    embedding_service: EmbeddingService,
    client: Optional[QdrantClient] = None,
    collection: Optional[str] = None,
    replace_transcript: Optional[str] = None,
    batch_size: int = 32,
) -> int:
    """Embed chunks in batches and upsert them with their payload (text included) under stable point ids. With replace_transcript, that transcript's old chunks are deleted first so a re-index replaces instead of accumulating. Returns the number of points written.
    Why available: Shared by the per-run scoped cache and the global transcript collection."""
    qc = client or get_qdrant()
    name = collection or settings.transcript_collection
    if replace_transcript is not None:
        delete_transcript_chunks(qc, name, replace_transcript)

    total = 0
    for batch in _batches(chunks, batch_size):
        vectors = embedding_service.embed_many([c.text for c in batch])
        if total == 0:
            ensure_collection(qc, name, len(vectors[0]))
        qc.upsert(
            collection_name=name,
            points=[
                PointStruct(id=stable_point_id(c.payload["chunk_id"]), vector=v, payload={**c.payload, "text": c.text})
                for c, v in zip(batch, vectors)
            ],
        )
        total += len(batch)
    logger.info("chunks_indexed", extra={"collection": name, "count": total})
    return total

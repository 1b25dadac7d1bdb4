import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tasksync.core.services import EmbeddingService
from tasksync.rag.retriever import ScopedChunkCache

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Per-invocation state passed through the call chain: transcript id, content hash, the run's scoped chunk cache, the ledger record of an earlier run over the same content, and the stages that degraded. Closing it clears the cache.
    Why available: Keeps the current transcript and its embeddings out of module globals, so overlapping runs in one process cannot see each other's data."""

    transcript_id: str
    content_hash: str = ""
    cache: Optional[ScopedChunkCache] = None
    prior_run: Optional[Dict[str, Any]] = None
    degraded_stages: List[str] = field(default_factory=list)
    skipped_candidates: int = 0
    started_at: float = field(default_factory=time.perf_counter)

    @classmethod
    def open(cls, transcript_id: Optional[str] = None, embedding_service: Optional[EmbeddingService] = None, **kwargs) -> "RunContext":
        cache = ScopedChunkCache(embedding_service) if embedding_service is not None else None
        return cls(transcript_id=transcript_id or str(uuid.uuid4()), cache=cache, **kwargs)

    def mark_degraded(self, stage: str, reason: str = "") -> None:
        if stage not in self.degraded_stages:
            self.degraded_stages.append(stage)
            logger.warning("stage_degraded", extra={"transcript_id": self.transcript_id, "stage": stage, "reason": reason[:200]})

    def prior_ticket_for(self, key: str) -> Optional[str]:
        if not self.prior_run:
            return None
        return (self.prior_run.get("created") or {}).get(key)

    def previously_merged(self, ticket_id: str, key: str) -> bool:
        if not self.prior_run:
            return False
        return key in ((self.prior_run.get("updated") or {}).get(ticket_id) or [])

    def close(self) -> None:
        if self.cache is not None:
            self.cache.clear()
        logger.info(
            "run_closed",
            extra={
                "transcript_id": self.transcript_id,
                "elapsed_ms": round((time.perf_counter() - self.started_at) * 1000.0, 1),
                "degraded": list(self.degraded_stages),
            },
        )

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

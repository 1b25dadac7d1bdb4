import os
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator, model_validator

load_dotenv()


class Settings(BaseModel):
    """Engine settings loaded from environment: OpenAI key and model names, Qdrant location and collections, ticket prefix and counter key, matching thresholds, chunking and retrieval limits, and prompt version.
    Why available: Single source of configuration so extractor, matcher, allocator and retriever agree on thresholds and names."""
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    chat_model: str = os.getenv("CHAT_MODEL", "gpt-4o-mini")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    openai_timeout_seconds: float = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "60"))

    qdrant_url: str = os.getenv("QDRANT_URL", "http://localhost:6333")
    qdrant_path: str = os.getenv("QDRANT_PATH", "")  # local on-disk mode when set
    task_collection: str = os.getenv("QDRANT_TASK_COLLECTION", "task_embeddings")
    transcript_collection: str = os.getenv("QDRANT_TRANSCRIPT_COLLECTION", "transcript_chunks")

    ticket_prefix: str = os.getenv("TICKET_PREFIX", "SP")
    counter_key: str = os.getenv("COUNTER_KEY", "ticket_counter")
    data_root: str = os.getenv("DATA_ROOT", os.path.join(os.getcwd(), "data"))

    similarity_threshold: float = float(os.getenv("SIMILARITY_THRESHOLD", "0.7"))
    adjudication_threshold: float = float(os.getenv("ADJUDICATION_THRESHOLD", "0.6"))
    fuzzy_name_threshold: float = float(os.getenv("FUZZY_NAME_THRESHOLD", "0.7"))
    status_confidence_threshold: float = float(os.getenv("STATUS_CONFIDENCE_THRESHOLD", "0.7"))
    rag_score_threshold: float = float(os.getenv("RAG_SCORE_THRESHOLD", "0.3"))

    chunk_size: int = int(os.getenv("CHUNK_SIZE", "1000"))
    chunk_overlap: int = int(os.getenv("CHUNK_OVERLAP", "200"))
    retrieve_top_k: int = int(os.getenv("RETRIEVE_TOP_K", "5"))
    index_cache_ttl_seconds: int = int(os.getenv("INDEX_CACHE_TTL_SECONDS", "30"))
    sync_window_days: int = int(os.getenv("SYNC_WINDOW_DAYS", "2"))
    prompt_version: str = os.getenv("PROMPT_VERSION", "v1")

    max_transcript_kb: int = int(os.getenv("MAX_TRANSCRIPT_KB", "1024"))
    rate_limit_requests: int = int(os.getenv("RATE_LIMIT_REQUESTS", "20"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

    @field_validator(
        "openai_timeout_seconds",
        "chunk_size",
        "retrieve_top_k",
        "index_cache_ttl_seconds",
        "sync_window_days",
        "max_transcript_kb",
        "rate_limit_requests",
        "rate_limit_window_seconds",
    )
    @classmethod
    def must_be_positive(cls, v):
        """Ensure sizes and windows are positive integers. Prevents invalid config from env."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator(
        "similarity_threshold",
        "adjudication_threshold",
        "fuzzy_name_threshold",
        "status_confidence_threshold",
        "rag_score_threshold",
    )
    @classmethod
    def must_be_unit_interval(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be within [0, 1]")
        return v

    @model_validator(mode="after")
    def overlap_below_chunk_size(self):
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
        return self


settings = Settings()

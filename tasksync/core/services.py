"""
External capabilities the engine depends on: text completion and text embedding.
The engine only sees the protocols; the OpenAI-backed implementations are the defaults.
"""
import threading
from typing import List, Optional, Protocol

from openai import OpenAI

from tasksync.core.config import settings
from tasksync.utils.retry import with_retry

_client: Optional[OpenAI] = None
_client_lock = threading.Lock()


def get_openai_client() -> OpenAI:
    """Process-wide OpenAI client built on first use from the api key and timeout in settings. The SDK's own retries are off because with_retry already wraps every call with logging.
    Why available: Extraction runs on a worker thread and the API serves requests from a threadpool, so the client is created once under a lock and then shared."""
    global _client
    with _client_lock:
        if _client is None:
            _client = OpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.openai_timeout_seconds,
                max_retries=0,
            )
        return _client


class CompletionService(Protocol):
    def complete(self, system_prompt: str, user_prompt: str) -> str:
        ...


class EmbeddingService(Protocol):
    def embed(self, text: str) -> List[float]:
        ...

    def embed_many(self, texts: List[str]) -> List[List[float]]:
        ...


class OpenAICompletionService:
    """Single-turn chat completion against the configured chat model (with retry).
    Why available: Default completion capability for task extraction, adjudication, and RAG merge prompts."""

    def __init__(self, model: Optional[str] = None, temperature: float = 0.1, max_tokens: int = 2000):
        self.model = model or settings.chat_model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        oc = get_openai_client()
        resp = with_retry(
            lambda: oc.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            ),
            label="chat_completion",
        )
        return resp.choices[0].message.content or ""


class OpenAIEmbeddingService:
    """Embed texts into dense vectors using the configured embedding model (with retry).
    Why available: Default embedding capability for the task similarity index and transcript chunk retrieval."""

    def __init__(self, model: Optional[str] = None):
        self.model = model or settings.embedding_model

    def embed(self, text: str) -> List[float]:
        return self.embed_many([text])[0]

    def embed_many(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        oc = get_openai_client()
        resp = with_retry(
            lambda: oc.embeddings.create(model=self.model, input=texts),
            label="embeddings",
        )
        return [d.embedding for d in resp.data]

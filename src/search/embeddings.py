"""
Query embeddings: OpenAI client, single-flight TTL cache, query enrichment.

Concurrent requests for the same normalized text share one upstream call;
the cached vector is reused until its TTL expires.
"""

import asyncio
import threading
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from config.constants import EMBEDDING_ENRICHMENTS
from config.settings import get_settings
from core.exceptions import ExternalServiceError, ValidationError
from core.logging import get_logger
from search.retry import RetryPolicy, call_with_retry, is_retryable_status

logger = get_logger(__name__)

Vector = List[float]


def prepare_query_for_embedding(query: str) -> str:
    """Append concept phrases for qualitative words so the embedding lands near them."""
    if not query or not query.strip():
        return query

    normalized = query.strip()
    lower = normalized.lower()
    enrichments: List[str] = []
    for triggers, phrases in EMBEDDING_ENRICHMENTS:
        if any(t in lower for t in triggers):
            enrichments.extend(phrases)

    if enrichments:
        return f"{normalized} {' '.join(enrichments)}"
    return normalized


# =============================================================================
# Cache
# =============================================================================

class EmbeddingCache:
    """
    TTL + LRU cache with per-key single-flight computation.

    Must be used from one event loop. Failed computations are not cached.
    """

    def __init__(
        self,
        ttl_seconds: float = 86400,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Vector]]" = OrderedDict()
        self._inflight: Dict[str, "asyncio.Future[Vector]"] = {}
        self.hits = 0
        self.misses = 0
        self.coalesced = 0

    @staticmethod
    def normalize_key(text: str) -> str:
        return " ".join(text.lower().split())

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, text: str) -> Optional[Vector]:
        key = self.normalize_key(text)
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, vector = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return vector

    async def get_or_compute(self, text: str, factory: Callable[[], Awaitable[Vector]]) -> Vector:
        key = self.normalize_key(text)

        cached = self.get(key)
        if cached is not None:
            self.hits += 1
            logger.debug("Embedding cache hit", text=key[:50])
            return cached

        task = self._inflight.get(key)
        if task is None:
            self.misses += 1
            logger.debug("Embedding cache miss", text=key[:50])
            task = asyncio.ensure_future(self._compute(key, factory))
            task.add_done_callback(_consume_exception)
            self._inflight[key] = task
        else:
            self.coalesced += 1

        # A cancelled waiter must not cancel the shared computation
        return await asyncio.shield(task)

    async def _compute(self, key: str, factory: Callable[[], Awaitable[Vector]]) -> Vector:
        try:
            vector = await factory()
            self._store(key, vector)
            return vector
        finally:
            self._inflight.pop(key, None)

    def _store(self, key: str, vector: Vector) -> None:
        self._entries[key] = (self._clock() + self._ttl, vector)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def stats(self) -> Dict[str, int]:
        return {
            "entries": len(self._entries),
            "inflight": len(self._inflight),
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self.coalesced,
        }


def _consume_exception(task: "asyncio.Future") -> None:
    if not task.cancelled():
        task.exception()


# =============================================================================
# OpenAI client
# =============================================================================

class OpenAIEmbeddingClient:
    """Async OpenAI embeddings with bounded concurrency and retry."""

    SERVICE = "embeddings"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.openai_api_key
        self._model = model or settings.embedding_model
        self._base_url = base_url if base_url is not None else settings.openai_base_url
        self._timeout = timeout or settings.embedding_timeout_seconds
        self._max_concurrency = max_concurrency or settings.embedding_max_concurrency
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._client = None
        self._client_lock = threading.Lock()
        self._semaphore: Optional[asyncio.Semaphore] = None

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @property
    def client(self):
        """Lazy-load AsyncOpenAI client."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(
                        api_key=self._api_key,
                        base_url=self._base_url,
                        timeout=self._timeout,
                        max_retries=0,
                    )
        return self._client

    async def embed(self, text: str) -> Vector:
        if not self.configured:
            raise ExternalServiceError("Embedding provider is not configured", service=self.SERVICE)
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)

        async with self._semaphore:
            return await call_with_retry(lambda: self._embed_once(text), self._retry, self.SERVICE)

    async def _embed_once(self, text: str) -> Vector:
        import openai

        try:
            response = await self.client.embeddings.create(model=self._model, input=text)
        except openai.APIStatusError as e:
            raise ExternalServiceError(
                f"Embedding request failed: {e.message}",
                service=self.SERVICE,
                status_code=e.status_code,
                retryable=is_retryable_status(e.status_code),
            ) from e
        except openai.APIConnectionError as e:
            raise ExternalServiceError(
                f"Embedding provider unreachable: {e}",
                service=self.SERVICE,
                retryable=True,
            ) from e

        vector = list(response.data[0].embedding)
        logger.debug("Generated embedding", dimensions=len(vector))
        return vector

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()


class CachedEmbeddingService:
    """Embedding client fronted by the single-flight cache."""

    def __init__(self, client, cache: Optional[EmbeddingCache] = None):
        settings = get_settings()
        self._client = client
        self.cache = cache or EmbeddingCache(
            ttl_seconds=settings.embedding_cache_ttl_seconds,
            max_entries=settings.embedding_cache_max_entries,
        )

    @property
    def configured(self) -> bool:
        return getattr(self._client, "configured", True)

    async def generate_embedding(self, text: str) -> Vector:
        if not text or not text.strip():
            raise ValidationError("Text to embed cannot be empty", field="text")
        return await self.cache.get_or_compute(text, lambda: self._client.embed(text))

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()

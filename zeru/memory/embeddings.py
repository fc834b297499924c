"""Generate embeddings via the OpenAI API.

Uses httpx.AsyncClient for async HTTP with connection pooling. One
provider (and so one connection pool) is kept per API key in a bounded
LRU cache shared by request handlers and background jobs.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

import httpx

from zeru.jobs import JobQueue

logger = logging.getLogger(__name__)


class EmbeddingUnavailableError(RuntimeError):
    """No embedding provider is configured for the tenant."""


class EmbeddingProvider:
    """Async embedding generation using OpenAI text-embedding-3-small."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        if not api_key:
            raise EmbeddingUnavailableError("OpenAI API key is empty")
        self.model = model
        self.dimensions = dimensions
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=30.0,
        )

    async def embed(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        response = await self._client.post(
            "/embeddings",
            json={
                "model": self.model,
                "input": text,
                "dimensions": self.dimensions,
            },
        )
        response.raise_for_status()
        return response.json()["data"][0]["embedding"]

    async def close(self) -> None:
        """Close the underlying httpx client."""
        await self._client.aclose()


class EmbeddingClientCache:
    """LRU map of API key -> EmbeddingProvider.

    Owned by the event loop: get() and close() must be called from the
    loop the job queue runs on. get() never awaits, so a lookup and its
    eviction are atomic with respect to other tasks. Evicted providers are
    closed through the job queue so a lookup never waits on a socket shutdown.
    """

    def __init__(
        self,
        queue: JobQueue,
        max_size: int = 32,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        self._queue = queue
        self.max_size = max_size
        self.model = model
        self.dimensions = dimensions
        self.base_url = base_url
        self._providers: OrderedDict[str, EmbeddingProvider] = OrderedDict()

    def get(self, api_key: str) -> EmbeddingProvider:
        """Return the cached provider for ``api_key``, creating it on first use."""
        if not api_key:
            raise EmbeddingUnavailableError("OpenAI API key is empty")

        provider = self._providers.get(api_key)
        if provider is not None:
            self._providers.move_to_end(api_key)
            return provider

        provider = self._create(api_key)
        self._providers[api_key] = provider
        while len(self._providers) > self.max_size:
            _, old = self._providers.popitem(last=False)
            logger.debug("Evicting embedding client (cache size %d)", self.max_size)
            self._queue.enqueue("embedding-client-close", old.close, max_retries=0)
        return provider

    def __len__(self) -> int:
        return len(self._providers)

    async def close(self) -> None:
        """Close every cached provider."""
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            await provider.close()

    def _create(self, api_key: str) -> EmbeddingProvider:
        return EmbeddingProvider(
            api_key,
            model=self.model,
            dimensions=self.dimensions,
            base_url=self.base_url,
        )

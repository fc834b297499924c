"""Tests for EmbeddingProvider and the per-key LRU client cache."""

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from zeru.jobs import JobQueue
from zeru.memory.embeddings import EmbeddingClientCache, EmbeddingProvider, EmbeddingUnavailableError


class TestEmbeddingProvider:
    def test_empty_key_is_unavailable(self):
        with pytest.raises(EmbeddingUnavailableError):
            EmbeddingProvider("")

    @pytest.mark.asyncio
    async def test_embed_posts_model_and_dimensions(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = request.read()
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

        provider = EmbeddingProvider("sk-abc", dimensions=3)
        provider._client = httpx.AsyncClient(
            base_url="https://api.test/v1",
            headers={"Authorization": "Bearer sk-abc"},
            transport=httpx.MockTransport(handler),
        )

        vector = await provider.embed("monthly close on the 5th")
        await provider.close()

        assert vector == [0.1, 0.2, 0.3]
        assert seen["path"] == "/v1/embeddings"
        assert seen["auth"] == "Bearer sk-abc"
        assert b'"dimensions":3' in seen["body"].replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        provider = EmbeddingProvider("sk-abc")
        provider._client = httpx.AsyncClient(
            base_url="https://api.test/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"error": {}})),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await provider.embed("text")
        await provider.close()


class TestEmbeddingClientCache:
    @pytest.mark.asyncio
    async def test_same_key_reuses_provider(self):
        cache = EmbeddingClientCache(MagicMock(spec=JobQueue), max_size=4)
        first = cache.get("sk-1")
        assert cache.get("sk-1") is first
        assert len(cache) == 1
        await cache.close()

    @pytest.mark.asyncio
    async def test_empty_key_is_unavailable(self):
        cache = EmbeddingClientCache(MagicMock(spec=JobQueue))
        with pytest.raises(EmbeddingUnavailableError):
            cache.get("")
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_least_recently_used_is_evicted_and_closed(self):
        queue = MagicMock(spec=JobQueue)
        cache = EmbeddingClientCache(queue, max_size=2)

        a = cache.get("sk-a")
        cache.get("sk-b")
        cache.get("sk-a")  # a is now most recently used
        cache.get("sk-c")  # evicts b

        assert len(cache) == 2
        assert cache.get("sk-a") is a
        queue.enqueue.assert_called_once()
        name, close_fn = queue.enqueue.call_args.args
        assert name == "embedding-client-close"
        assert queue.enqueue.call_args.kwargs == {"max_retries": 0}
        await close_fn()
        await cache.close()

    @pytest.mark.asyncio
    async def test_concurrent_tasks_share_one_provider(self):
        cache = EmbeddingClientCache(MagicMock(spec=JobQueue), max_size=8)

        async def lookup():
            await asyncio.sleep(0)
            return cache.get("sk-shared")

        providers = await asyncio.gather(*(lookup() for _ in range(10)))
        assert len({id(p) for p in providers}) == 1
        assert len(cache) == 1
        await cache.close()

    @pytest.mark.asyncio
    async def test_evicted_provider_is_closed_by_the_queue(self):
        queue = JobQueue()
        cache = EmbeddingClientCache(queue, max_size=1)

        old = cache.get("sk-old")
        cache.get("sk-new")
        await queue.join()

        assert old._client.is_closed
        assert len(cache) == 1
        await queue.shutdown()
        await cache.close()

    @pytest.mark.asyncio
    async def test_close_empties_cache(self):
        cache = EmbeddingClientCache(MagicMock(spec=JobQueue))
        cache.get("sk-1")
        cache.get("sk-2")
        await cache.close()
        assert len(cache) == 0

"""
Unit tests for retrieval plumbing.

Tests cover:
1. RRFMerger - rank fusion, overlap handling, weights
2. Retry - backoff delays, retryable vs fatal errors
3. EmbeddingCache - TTL, LRU, single-flight coalescing
4. CachedEmbeddingService - validation and delegation
5. Query enrichment for embeddings
6. RestSearchBackend - request shape and error mapping

Run with: PYTHONPATH=src python -m pytest tests/unit/test_retrieval.py -v
"""

import asyncio
import json

import httpx
import pytest

from core.exceptions import ConfigurationError, ExternalServiceError, ValidationError


# =============================================================================
# 1. RRF
# =============================================================================

class TestRRFMerger:

    def test_formula(self, result_factory):
        from search.rrf import RRFMerger

        a = [result_factory("a"), result_factory("b")]
        b = [result_factory("b"), result_factory("c")]

        merged = RRFMerger(k=60).merge(a, b, 0.5, 0.5)

        scores = {r.vehicle.id: r.score for r in merged}
        assert scores["a"] == pytest.approx(0.5 / 61)
        assert scores["b"] == pytest.approx(0.5 / 62 + 0.5 / 61)
        assert scores["c"] == pytest.approx(0.5 / 62)
        assert [r.vehicle.id for r in merged] == ["b", "a", "c"]

    def test_overlap_appears_once_with_union_breakdown(self, result_factory):
        from search.rrf import RRFMerger

        exact = [result_factory("x", score=1.0, exact=1.0)]
        semantic = [result_factory("x", score=0.8, semantic=0.8)]

        (merged,) = RRFMerger().merge(exact, semantic)

        assert merged.score_breakdown.exact_match_score == 1.0
        assert merged.score_breakdown.semantic_score == 0.8

    def test_weights_shift_ranking(self, result_factory):
        from search.rrf import RRFMerger

        a = [result_factory("a")]
        b = [result_factory("b")]

        merged = RRFMerger().merge(a, b, weight1=0.3, weight2=0.7)

        assert [r.vehicle.id for r in merged] == ["b", "a"]

    def test_empty_inputs(self):
        from search.rrf import RRFMerger

        assert RRFMerger().merge([], []) == []
        assert RRFMerger().merge_multiple([]) == []

    def test_inputs_not_mutated(self, result_factory):
        from search.rrf import RRFMerger

        a = [result_factory("a", score=0.9)]
        RRFMerger().merge(a, [])

        assert a[0].score == 0.9

    def test_merge_multiple_normalizes_weights(self, result_factory):
        from search.rrf import RRFMerger

        lists = [[result_factory("a")], [result_factory("b")], [result_factory("a")]]

        merged = RRFMerger(k=10).merge_multiple(lists, weights=[2, 1, 1])

        scores = {r.vehicle.id: r.score for r in merged}
        assert scores["a"] == pytest.approx(0.5 / 11 + 0.25 / 11)
        assert scores["b"] == pytest.approx(0.25 / 11)

    def test_merge_multiple_rejects_bad_weights(self, result_factory):
        from search.rrf import RRFMerger

        lists = [[result_factory("a")], [result_factory("b")]]

        with pytest.raises(ConfigurationError):
            RRFMerger().merge_multiple(lists, weights=[1.0])
        with pytest.raises(ConfigurationError):
            RRFMerger().merge_multiple(lists, weights=[0, 0])
        with pytest.raises(ConfigurationError):
            RRFMerger().merge_multiple(lists, weights=[-1, 2])

    def test_swapping_lists_and_weights_gives_same_scores(self, result_factory):
        from search.rrf import RRFMerger

        a = [result_factory("a", exact=1.0), result_factory("b", exact=1.0), result_factory("d", exact=1.0)]
        b = [result_factory("c", semantic=0.7), result_factory("a", semantic=0.9), result_factory("e", semantic=0.4)]
        merger = RRFMerger(k=10)

        forward = {r.vehicle.id: r for r in merger.merge(a, b, 0.3, 0.7)}
        swapped = {r.vehicle.id: r for r in merger.merge(b, a, 0.7, 0.3)}

        assert forward.keys() == swapped.keys() == {"a", "b", "c", "d", "e"}
        for vid, result in forward.items():
            assert result.score == pytest.approx(swapped[vid].score)
            assert result.score_breakdown == swapped[vid].score_breakdown

    def test_duplicate_within_one_list_counts_once(self, result_factory):
        from search.rrf import RRFMerger

        a = [result_factory("x"), result_factory("y"), result_factory("x")]

        merged = RRFMerger(k=60).merge(a, [], 1.0, 0.0)

        scores = {r.vehicle.id: r.score for r in merged}
        assert len(merged) == 2
        assert scores["x"] == pytest.approx(1.0 / 61)
        assert scores["y"] == pytest.approx(1.0 / 62)

    def test_final_score_is_fused_score(self, result_factory):
        from search.rrf import RRFMerger

        exact = [result_factory("x", score=1.0, exact=1.0), result_factory("y", score=1.0, exact=1.0)]
        semantic = [result_factory("x", score=0.9, semantic=0.9)]

        merged = RRFMerger().merge_multiple([exact, semantic])

        assert all(r.score_breakdown.final_score == r.score for r in merged)
        assert merged[0].score_breakdown.final_score == pytest.approx(0.5 / 61 + 0.5 / 61)

    def test_invalid_k(self):
        from search.rrf import RRFMerger

        with pytest.raises(ConfigurationError):
            RRFMerger(k=0)


# =============================================================================
# 2. Retry
# =============================================================================

class TestRetry:

    @pytest.mark.parametrize("status,expected", [
        (429, True), (500, True), (503, True), (400, False), (404, False), (None, False),
    ])
    def test_is_retryable_status(self, status, expected):
        from search.retry import is_retryable_status

        assert is_retryable_status(status) is expected

    def test_backoff_doubles_and_caps(self):
        from search.retry import calculate_backoff_delay

        assert calculate_backoff_delay(1, 1.0, 8.0, jitter=0) == 1.0
        assert calculate_backoff_delay(3, 1.0, 8.0, jitter=0) == 4.0
        assert calculate_backoff_delay(6, 1.0, 8.0, jitter=0) == 8.0
        assert calculate_backoff_delay(1, 0.0, 8.0) == 0.0

    def test_jitter_bounded(self):
        from search.retry import calculate_backoff_delay

        for _ in range(50):
            assert 0.8 <= calculate_backoff_delay(1, 1.0, 8.0, jitter=0.2) <= 1.2

    async def test_retries_transient_then_succeeds(self):
        from search.retry import RetryPolicy, call_with_retry

        calls = []
        delays = []

        async def operation():
            calls.append(1)
            if len(calls) < 3:
                raise ExternalServiceError("busy", service="search", status_code=503, retryable=True)
            return "ok"

        async def sleep(delay):
            delays.append(delay)

        result = await call_with_retry(operation, RetryPolicy(max_attempts=3, base_delay=1.0), "search", sleep=sleep)

        assert result == "ok"
        assert len(calls) == 3
        assert len(delays) == 2

    async def test_gives_up_after_max_attempts(self):
        from search.retry import RetryPolicy, call_with_retry

        calls = []

        async def operation():
            calls.append(1)
            raise ExternalServiceError("busy", service="search", status_code=429, retryable=True)

        async def sleep(delay):
            return None

        with pytest.raises(ExternalServiceError) as exc_info:
            await call_with_retry(operation, RetryPolicy(max_attempts=3), "search", sleep=sleep)

        assert exc_info.value.status_code == 429
        assert len(calls) == 3

    async def test_fatal_error_not_retried(self):
        from search.retry import RetryPolicy, call_with_retry

        calls = []

        async def operation():
            calls.append(1)
            raise ExternalServiceError("bad request", service="search", status_code=400)

        with pytest.raises(ExternalServiceError):
            await call_with_retry(operation, RetryPolicy(max_attempts=5), "search")

        assert len(calls) == 1

    def test_policy_from_settings(self, test_settings):
        from search.retry import RetryPolicy

        policy = RetryPolicy.from_settings(test_settings)

        assert policy.max_attempts == test_settings.retry_max_attempts
        assert policy.base_delay == 0.0


# =============================================================================
# 3. EmbeddingCache
# =============================================================================

class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestEmbeddingCache:

    async def test_hit_after_miss(self):
        from search.embeddings import EmbeddingCache

        cache = EmbeddingCache()
        calls = []

        async def factory():
            calls.append(1)
            return [1.0, 2.0]

        first = await cache.get_or_compute("Reliable  Family Car", factory)
        second = await cache.get_or_compute("reliable family car", factory)

        assert first == second == [1.0, 2.0]
        assert len(calls) == 1
        assert cache.stats()["hits"] == 1

    async def test_single_flight(self):
        """Concurrent requests for one key share one upstream call."""
        from search.embeddings import EmbeddingCache

        cache = EmbeddingCache()
        calls = []
        release = asyncio.Event()

        async def factory():
            calls.append(1)
            await release.wait()
            return [0.5]

        tasks = [asyncio.create_task(cache.get_or_compute("cheap car", factory)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert results == [[0.5]] * 5
        assert len(calls) == 1
        assert cache.stats()["coalesced"] == 4
        assert cache.stats()["inflight"] == 0

    async def test_ttl_expiry(self):
        from search.embeddings import EmbeddingCache

        clock = FakeClock()
        cache = EmbeddingCache(ttl_seconds=10, clock=clock)
        calls = []

        async def factory():
            calls.append(1)
            return [float(len(calls))]

        assert await cache.get_or_compute("q", factory) == [1.0]
        clock.now = 9.9
        assert await cache.get_or_compute("q", factory) == [1.0]
        clock.now = 10.0
        assert await cache.get_or_compute("q", factory) == [2.0]

    async def test_lru_eviction(self):
        from search.embeddings import EmbeddingCache

        cache = EmbeddingCache(max_entries=2)

        async def factory():
            return [1.0]

        await cache.get_or_compute("a", factory)
        await cache.get_or_compute("b", factory)
        cache.get("a")
        await cache.get_or_compute("c", factory)

        assert len(cache) == 2
        assert cache.get("a") is not None
        assert cache.get("b") is None

    async def test_failures_not_cached(self):
        from search.embeddings import EmbeddingCache

        cache = EmbeddingCache()
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise ExternalServiceError("down", service="embeddings", retryable=True)
            return [3.0]

        with pytest.raises(ExternalServiceError):
            await cache.get_or_compute("q", flaky)
        assert await cache.get_or_compute("q", flaky) == [3.0]
        assert len(cache) == 1

    async def test_cancelled_waiter_does_not_cancel_computation(self):
        from search.embeddings import EmbeddingCache

        cache = EmbeddingCache()
        release = asyncio.Event()

        async def factory():
            await release.wait()
            return [7.0]

        first = asyncio.create_task(cache.get_or_compute("q", factory))
        second = asyncio.create_task(cache.get_or_compute("q", factory))
        await asyncio.sleep(0)
        first.cancel()
        release.set()

        assert await second == [7.0]
        with pytest.raises(asyncio.CancelledError):
            await first


# =============================================================================
# 4. CachedEmbeddingService
# =============================================================================

class TestCachedEmbeddingService:

    async def test_empty_text_rejected(self):
        from unittest.mock import AsyncMock
        from search.embeddings import CachedEmbeddingService

        service = CachedEmbeddingService(AsyncMock())

        with pytest.raises(ValidationError):
            await service.generate_embedding("   ")

    async def test_delegates_once_per_text(self):
        from unittest.mock import AsyncMock
        from search.embeddings import CachedEmbeddingService

        client = AsyncMock()
        client.embed.return_value = [0.1, 0.2]
        service = CachedEmbeddingService(client)

        assert await service.generate_embedding("family car") == [0.1, 0.2]
        assert await service.generate_embedding("Family Car") == [0.1, 0.2]
        client.embed.assert_awaited_once_with("family car")

    async def test_unconfigured_client_raises_external_error(self):
        from search.embeddings import OpenAIEmbeddingClient

        client = OpenAIEmbeddingClient(api_key="")

        assert client.configured is False
        with pytest.raises(ExternalServiceError):
            await client.embed("anything")


# =============================================================================
# 5. Query enrichment
# =============================================================================

class TestPrepareQuery:

    def test_enriches_known_concepts(self):
        from search.embeddings import prepare_query_for_embedding

        text = prepare_query_for_embedding("reliable family car")

        assert text.startswith("reliable family car ")
        assert "well-maintained cars" in text
        assert "spacious practical" in text

    def test_passthrough(self):
        from search.embeddings import prepare_query_for_embedding

        assert prepare_query_for_embedding("  red ford  ") == "red ford"
        assert prepare_query_for_embedding("") == ""


# =============================================================================
# 6. RestSearchBackend
# =============================================================================

def _backend(handler, **kwargs):
    from search.backend import RestSearchBackend
    from search.retry import RetryPolicy

    return RestSearchBackend(
        endpoint="https://search.test",
        api_key="secret",
        index_name="vehicles",
        api_version="2024-07-01",
        vector_field="descriptionVector",
        retry_policy=RetryPolicy(max_attempts=kwargs.pop("attempts", 2), base_delay=0.0),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestRestSearchBackend:

    async def test_filter_search_request_and_parsing(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["api_key"] = request.headers["api-key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"value": [
                {"@search.score": 1.0, "id": "v1", "make": "BMW", "price": 20000},
                {"@search.score": 0.5, "make": "broken"},
            ]})

        backend = _backend(handler)
        hits = await backend.filter_search("make eq 'BMW'", 5)
        await backend.close()

        assert seen["url"] == "https://search.test/indexes/vehicles/docs/search?api-version=2024-07-01"
        assert seen["api_key"] == "secret"
        assert seen["body"]["filter"] == "make eq 'BMW'"
        assert seen["body"]["top"] == 5
        assert len(hits) == 1
        assert hits[0].vehicle.make == "BMW"
        assert hits[0].score == 1.0

    async def test_vector_search_body(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"value": [{"@search.score": 0.8, "id": "v2"}]})

        backend = _backend(handler)
        hits = await backend.vector_search([0.1, 0.2], 9, "price le 10000")

        query = seen["body"]["vectorQueries"][0]
        assert query == {"kind": "vector", "vector": [0.1, 0.2], "k": 9, "fields": "descriptionVector"}
        assert seen["body"]["filter"] == "price le 10000"
        assert hits[0].score == 0.8

    async def test_get_vehicle_not_found(self):
        backend = _backend(lambda request: httpx.Response(404))

        assert await backend.get_vehicle("missing") is None

    async def test_retryable_status_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"value": []})

        backend = _backend(handler)

        assert await backend.filter_search("make eq 'BMW'", 5) == []
        assert len(calls) == 2

    async def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(400)

        backend = _backend(handler, attempts=3)

        with pytest.raises(ExternalServiceError) as exc_info:
            await backend.filter_search("bad filter", 5)

        assert exc_info.value.status_code == 400
        assert exc_info.value.retryable is False
        assert len(calls) == 1

    async def test_unconfigured_backend(self):
        from search.backend import RestSearchBackend

        backend = RestSearchBackend(endpoint="", api_key="")

        assert backend.configured is False
        with pytest.raises(ExternalServiceError):
            await backend.filter_search("make eq 'BMW'", 1)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

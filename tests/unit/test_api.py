"""
Unit tests for the HTTP surface.

Tests cover:
1. Health endpoints
2. POST /search (camelCase contract, error mapping)
3. POST /search/rerank
4. POST /search/explain and /search/similarity

The pipeline singleton is replaced with one wired to an in-memory backend.

Run with: PYTHONPATH=src python -m pytest tests/unit/test_api.py -v
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.exceptions import ExternalServiceError
from search.backend import SearchHit
from search.models import SearchResults
from search.pipeline import VehicleSearchPipeline


@pytest.fixture
def pipeline(monkeypatch, fake_backend, mock_embeddings, test_settings):
    pipeline = VehicleSearchPipeline(backend=fake_backend, embeddings=mock_embeddings, settings=test_settings)
    monkeypatch.setattr("api.routes.search.get_search_pipeline", lambda: pipeline)
    return pipeline


def ford_request(**overrides):
    body = {
        "query": "a ford",
        "entities": [{"type": "make", "value": "Ford"}],
        "maxResults": 2,
    }
    body.update(overrides)
    return body


# =============================================================================
# 1. Health
# =============================================================================

class TestHealthEndpoints:

    async def test_health(self, async_client):
        response = await async_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "vehicle-search-api"}

    async def test_detailed_health(self, async_client):
        response = await async_client.get("/health/detailed")

        data = response.json()
        assert response.status_code == 200
        assert data["checks"]["config"] == "ok"
        assert "search_backend" in data["checks"]
        assert "embeddings" in data["checks"]

    async def test_live(self, async_client):
        response = await async_client.get("/live")

        assert response.json() == {"status": "alive"}

    async def test_ready(self, async_client):
        response = await async_client.get("/ready")

        assert response.status_code == 200
        assert response.json()["status"] in ("ready", "not_ready")

    async def test_request_id_header(self, async_client):
        response = await async_client.get("/health")

        assert "X-Request-ID" in response.headers


# =============================================================================
# 2. Search
# =============================================================================

class TestSearchEndpoint:

    async def test_search(self, async_client, pipeline, fake_backend, vehicle_factory):
        fake_backend.filter_hits = [
            SearchHit(vehicle=vehicle_factory("focus", model="Focus"), score=1.0),
            SearchHit(vehicle=vehicle_factory("fiesta", model="Fiesta"), score=1.0),
            SearchHit(vehicle=vehicle_factory("puma", model="Puma"), score=1.0),
        ]

        response = await async_client.post("/search", json=ford_request())

        assert response.status_code == 200
        data = response.json()
        assert data["totalCount"] == 2
        assert data["queryType"] == "simple"
        assert data["strategy"]["type"] == "exact_only"
        assert data["searchDuration"].endswith("ms")
        assert data["degraded"] is False
        first = data["results"][0]
        assert first["vehicle"]["make"] == "Ford"
        assert "scoreBreakdown" in first
        assert first["explanation"].startswith("This vehicle strongly matches")

    async def test_search_without_rerank(self, async_client, pipeline, fake_backend, vehicle_factory):
        fake_backend.filter_hits = [SearchHit(vehicle=vehicle_factory("focus"), score=1.0)]

        response = await async_client.post("/search", json=ford_request(rerank=False))

        assert response.status_code == 200
        assert fake_backend.filter_calls == [("(make eq 'Ford')", 2)]

    async def test_max_results_zero_is_bad_request(self, async_client, pipeline):
        response = await async_client.post("/search", json=ford_request(maxResults=0))

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    async def test_empty_query_rejected(self, async_client, pipeline):
        response = await async_client.post("/search", json={"query": ""})

        assert response.status_code == 422

    async def test_backend_failure_is_bad_gateway(self, async_client, pipeline, fake_backend):
        fake_backend.filter_error = ExternalServiceError("down", service="search", status_code=503, retryable=True)

        response = await async_client.post("/search", json=ford_request())

        assert response.status_code == 502
        assert response.json()["error"] == "ExternalServiceError"

    async def test_cancelled_is_gateway_timeout(self, async_client, monkeypatch):
        stub = MagicMock()
        stub.search = AsyncMock(return_value=SearchResults(cancelled=True))
        monkeypatch.setattr("api.routes.search.get_search_pipeline", lambda: stub)

        response = await async_client.post("/search", json=ford_request())

        assert response.status_code == 504
        assert response.json()["error"] == "SearchCancelledError"

    async def test_degraded_hybrid(self, async_client, pipeline, fake_backend, vehicle_factory, mock_embeddings):
        fake_backend.filter_hits = [SearchHit(vehicle=vehicle_factory("focus"), score=1.0)]
        mock_embeddings.generate_embedding.side_effect = ExternalServiceError(
            "rate limited", service="embeddings", status_code=429, retryable=True
        )
        body = ford_request(entities=[
            {"type": "make", "value": "Ford"},
            {"type": "qualitative_term", "value": "reliable"},
        ])

        response = await async_client.post("/search", json=body)

        assert response.status_code == 200
        data = response.json()
        assert data["degraded"] is True
        assert data["totalCount"] == 1
        assert data["warnings"]


# =============================================================================
# 3. Rerank
# =============================================================================

class TestRerankEndpoint:

    def payload(self, *results):
        return [r.model_dump(mode="json", by_alias=True) for r in results]

    async def test_rerank_default(self, async_client, pipeline, result_factory):
        results = self.payload(
            result_factory("low", score=0.2, semantic=0.2, model="Fiesta"),
            result_factory("high", score=0.9, semantic=0.9, model="Focus"),
        )

        response = await async_client.post("/search/rerank", json={"results": results})

        assert response.status_code == 200
        ids = [r["vehicle"]["id"] for r in response.json()["results"]]
        assert ids == ["high", "low"]

    async def test_invalid_strategy(self, async_client, pipeline, result_factory):
        body = {
            "results": self.payload(result_factory()),
            "strategy": {"approach": "hybrid", "maxPerMake": 0},
        }

        response = await async_client.post("/search/rerank", json=body)

        assert response.status_code == 422
        assert response.json()["error"] == "ConfigurationError"


# =============================================================================
# 4. Explain / similarity
# =============================================================================

class TestExplainAndSimilarity:

    async def test_explain(self, async_client, pipeline, fake_backend, vehicle_factory):
        fake_backend.vehicles = {"v1": vehicle_factory("v1", make="BMW")}
        body = {
            "vehicleId": "v1",
            "query": {"originalQuery": "a bmw", "entities": [{"type": "make", "value": "BMW"}]},
        }

        response = await async_client.post("/search/explain", json=body)

        assert response.status_code == 200
        data = response.json()
        assert data["score"] == 1.0
        assert data["components"][0]["factor"] == "Make Match"
        assert data["explanation"] == "This vehicle strongly matches your search for a BMW."

    async def test_explain_missing_vehicle(self, async_client, pipeline):
        body = {"vehicleId": "nope", "query": {"originalQuery": "a bmw"}}

        response = await async_client.post("/search/explain", json=body)

        assert response.status_code == 404

    async def test_similarity(self, async_client, pipeline, fake_backend, vehicle_factory):
        fake_backend.vehicles = {"v1": vehicle_factory("v1", bodyType="SUV", numberOfSeats=7)}

        response = await async_client.post("/search/similarity", json={"vehicleId": "v1", "concept": "family car"})

        assert response.status_code == 200
        data = response.json()
        assert data["overallScore"] == pytest.approx(1.0)
        assert "bodyType" in data["matchingAttributes"]

    async def test_similarity_unknown_concept(self, async_client, pipeline, fake_backend, vehicle_factory):
        fake_backend.vehicles = {"v1": vehicle_factory("v1")}

        response = await async_client.post("/search/similarity", json={"vehicleId": "v1", "concept": "flying"})

        assert response.status_code == 400

    async def test_similarity_missing_vehicle(self, async_client, pipeline):
        response = await async_client.post("/search/similarity", json={"vehicleId": "nope", "concept": "reliable"})

        assert response.status_code == 404


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

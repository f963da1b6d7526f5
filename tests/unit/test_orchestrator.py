"""
Unit tests for the SearchOrchestrator.

Tests cover:
1. Strategy selection and hybrid weights
2. Exact-only execution (structured filter, uniform scores)
3. Semantic-only execution (relevance threshold, truncation, prefilter)
4. Hybrid execution (concurrent legs, RRF, graceful degradation)
5. Deadline handling
6. max_results validation

Run with: PYTHONPATH=src python -m pytest tests/unit/test_orchestrator.py -v
"""

import asyncio

import pytest

from core.exceptions import ExternalServiceError, ValidationError
from search.backend import SearchHit
from search.models import (
    ComposedQuery,
    ConstraintGroup,
    ConstraintOperator,
    ConstraintType,
    LogicalOperator,
    SearchApproach,
    SearchConstraint,
    StrategyType,
)
from search.orchestrator import SEMANTIC_DEGRADED_WARNING, SearchOrchestrator, semantic_query_text


# =============================================================================
# Helpers
# =============================================================================

def exact(field_name, value):
    return SearchConstraint(field_name=field_name, operator=ConstraintOperator.EQUALS, value=value)


def bound(field_name, value):
    return SearchConstraint(
        field_name=field_name,
        operator=ConstraintOperator.LESS_THAN_OR_EQUAL,
        value=value,
        type=ConstraintType.RANGE,
    )


def semantic(field_name, value, term):
    return SearchConstraint(
        field_name=field_name,
        operator=ConstraintOperator.LESS_THAN_OR_EQUAL,
        value=value,
        type=ConstraintType.SEMANTIC,
        source_term=term,
    )


def query_of(*constraints, warnings=None):
    return ComposedQuery(
        constraint_groups=[ConstraintGroup(constraints=list(constraints), operator=LogicalOperator.AND)],
        warnings=warnings or [],
    )


def hits(vehicle_factory, *pairs):
    return [SearchHit(vehicle=vehicle_factory(vid), score=score) for vid, score in pairs]


@pytest.fixture
def orchestrator(fake_backend, mock_embeddings, test_settings):
    return SearchOrchestrator(fake_backend, mock_embeddings, settings=test_settings)


# =============================================================================
# 1. Strategy
# =============================================================================

class TestDetermineStrategy:

    def test_exact_only(self, orchestrator):
        strategy = orchestrator.determine_strategy(query_of(exact("make", "BMW"), bound("price", 20000)))

        assert strategy.type == StrategyType.EXACT_ONLY
        assert strategy.weights == {SearchApproach.EXACT_MATCH: 1.0}
        assert strategy.should_rerank is False

    def test_semantic_only(self, orchestrator):
        strategy = orchestrator.determine_strategy(query_of(semantic("price", 12000, "cheap")))

        assert strategy.type == StrategyType.SEMANTIC_ONLY
        assert strategy.weights == {SearchApproach.SEMANTIC_SEARCH: 1.0}

    def test_empty_query_is_semantic(self, orchestrator):
        assert orchestrator.determine_strategy(ComposedQuery()).type == StrategyType.SEMANTIC_ONLY

    @pytest.mark.parametrize("exact_count,expected_exact", [(1, 0.15), (2, 0.30), (4, 0.60), (5, 0.70), (8, 0.70)])
    def test_hybrid_weights(self, orchestrator, exact_count, expected_exact):
        constraints = [exact(f"field{i}", "x") for i in range(exact_count)]
        strategy = orchestrator.determine_strategy(query_of(*constraints, semantic("mileage", 60000, "reliable")))

        assert strategy.type == StrategyType.HYBRID
        assert strategy.should_rerank is True
        assert strategy.weight_for(SearchApproach.EXACT_MATCH) == pytest.approx(expected_exact)
        assert strategy.weight_for(SearchApproach.SEMANTIC_SEARCH) == pytest.approx(1 - expected_exact)

    def test_structured_filter_skips_semantic(self, orchestrator):
        query = query_of(exact("make", "BMW"), semantic("price", 12000, "cheap"))

        assert orchestrator.structured_filter(query) == "(make eq 'BMW')"

    def test_semantic_query_text(self):
        query = query_of(
            exact("make", "BMW"),
            semantic("price", 12000, "cheap"),
            semantic("mileage", 60000, "reliable"),
            semantic("engineSize", 2.0, "cheap"),
        )

        assert semantic_query_text(query, "a cheap reliable bmw") == "cheap reliable"
        assert semantic_query_text(query_of(exact("make", "BMW")), "  a bmw ") == "a bmw"


# =============================================================================
# 2. Exact only
# =============================================================================

class TestExactSearch:

    async def test_exact_results_uniform(self, orchestrator, fake_backend, vehicle_factory, mock_embeddings):
        fake_backend.filter_hits = hits(vehicle_factory, ("a", 7.0), ("b", 3.0))

        results = await orchestrator.search(query_of(exact("make", "Ford")), max_results=10)

        assert [r.vehicle.id for r in results.results] == ["a", "b"]
        assert all(r.score == 1.0 for r in results.results)
        assert all(r.score_breakdown.exact_match_score == 1.0 for r in results.results)
        assert fake_backend.filter_calls == [("(make eq 'Ford')", 10)]
        mock_embeddings.generate_embedding.assert_not_awaited()
        assert results.metadata["strategy"] == "exact_only"
        assert results.total_count == 2

    async def test_query_warnings_carried(self, orchestrator):
        results = await orchestrator.search(query_of(exact("make", "Ford"), warnings=["Contradictory values"]))

        assert "Contradictory values" in results.warnings

    async def test_exact_failure_propagates(self, orchestrator, fake_backend):
        fake_backend.filter_error = ExternalServiceError("down", service="search", status_code=503, retryable=True)

        with pytest.raises(ExternalServiceError):
            await orchestrator.search(query_of(exact("make", "Ford")))


# =============================================================================
# 3. Semantic only
# =============================================================================

class TestSemanticSearch:

    async def test_threshold_and_truncation(self, orchestrator, fake_backend, vehicle_factory, mock_embeddings):
        fake_backend.vector_hits = hits(vehicle_factory, ("a", 0.9), ("b", 0.8), ("c", 0.7), ("d", 0.4))

        results = await orchestrator.search(query_of(semantic("price", 12000, "cheap")), max_results=2)

        assert [r.vehicle.id for r in results.results] == ["a", "b"]
        assert results.results[0].score_breakdown.semantic_score == 0.9
        vector, k, prefilter = fake_backend.vector_calls[0]
        assert k == 2 * _overfetch(orchestrator)
        assert prefilter is None
        mock_embeddings.generate_embedding.assert_awaited_once()

    async def test_all_below_threshold(self, orchestrator, fake_backend, vehicle_factory):
        fake_backend.vector_hits = hits(vehicle_factory, ("a", 0.2))

        results = await orchestrator.search(query_of(semantic("price", 12000, "cheap")))

        assert results.results == []

    async def test_raw_text_when_no_constraints(self, orchestrator, fake_backend, vehicle_factory, mock_embeddings):
        fake_backend.vector_hits = hits(vehicle_factory, ("a", 0.9))

        results = await orchestrator.search(ComposedQuery(), original_query="something red and fast")

        assert len(results.results) == 1
        assert results.metadata["semanticQuery"] == "something red and fast"
        embedded = mock_embeddings.generate_embedding.await_args.args[0]
        assert embedded.startswith("something red and fast")

    async def test_nothing_to_search(self, orchestrator, fake_backend, mock_embeddings):
        results = await orchestrator.search(ComposedQuery())

        assert results.results == []
        mock_embeddings.generate_embedding.assert_not_awaited()
        assert fake_backend.vector_calls == []


def _overfetch(orchestrator):
    return orchestrator._settings.semantic_overfetch_factor


# =============================================================================
# 4. Hybrid
# =============================================================================

class TestHybridSearch:

    def hybrid_query(self):
        return query_of(exact("make", "Ford"), semantic("mileage", 60000, "reliable"))

    async def test_merges_both_legs(self, orchestrator, fake_backend, vehicle_factory):
        fake_backend.filter_hits = hits(vehicle_factory, ("a", 1.0), ("b", 1.0))
        fake_backend.vector_hits = hits(vehicle_factory, ("b", 0.9), ("c", 0.8))

        results = await orchestrator.search(self.hybrid_query(), max_results=10)

        ids = [r.vehicle.id for r in results.results]
        assert ids[0] == "b"
        assert sorted(ids) == ["a", "b", "c"]
        merged_b = results.results[0]
        assert merged_b.score_breakdown.exact_match_score == 1.0
        assert merged_b.score_breakdown.semantic_score == 0.9
        assert results.degraded is False
        assert results.metadata["exactCandidates"] == 2
        assert results.metadata["semanticCandidates"] == 2

    async def test_legs_run_concurrently(self, orchestrator, fake_backend, vehicle_factory):
        exact_started = asyncio.Event()
        semantic_started = asyncio.Event()

        # Each leg blocks until the other has started; run one after the
        # other they would never finish inside the deadline.
        async def filter_search(odata_filter, top):
            exact_started.set()
            await semantic_started.wait()
            return hits(vehicle_factory, ("a", 1.0))

        async def vector_search(vector, k, odata_filter=None):
            semantic_started.set()
            await exact_started.wait()
            return hits(vehicle_factory, ("c", 0.8))

        fake_backend.filter_search = filter_search
        fake_backend.vector_search = vector_search

        results = await orchestrator.search(self.hybrid_query(), max_results=10, timeout=2.0)

        assert results.cancelled is False
        assert sorted(r.vehicle.id for r in results.results) == ["a", "c"]

    async def test_prefilter_uses_structured_constraints(self, orchestrator, fake_backend, vehicle_factory):
        fake_backend.vector_hits = hits(vehicle_factory, ("c", 0.8))

        await orchestrator.search(self.hybrid_query(), max_results=5)

        _, k, prefilter = fake_backend.vector_calls[0]
        assert prefilter == "(make eq 'Ford')"
        assert fake_backend.filter_calls[0] == ("(make eq 'Ford')", 5 * _overfetch(orchestrator))

    async def test_truncates_after_merge(self, orchestrator, fake_backend, vehicle_factory):
        fake_backend.filter_hits = hits(vehicle_factory, *[(f"e{i}", 1.0) for i in range(5)])
        fake_backend.vector_hits = hits(vehicle_factory, *[(f"s{i}", 0.9) for i in range(5)])

        results = await orchestrator.search(self.hybrid_query(), max_results=3)

        assert len(results.results) == 3

    async def test_semantic_failure_degrades(self, orchestrator, fake_backend, vehicle_factory, mock_embeddings):
        fake_backend.filter_hits = hits(vehicle_factory, ("a", 1.0), ("b", 1.0))
        mock_embeddings.generate_embedding.side_effect = ExternalServiceError(
            "rate limited", service="embeddings", status_code=429, retryable=True
        )

        results = await orchestrator.search(self.hybrid_query(), max_results=10)

        assert [r.vehicle.id for r in results.results] == ["a", "b"]
        assert results.degraded is True
        assert SEMANTIC_DEGRADED_WARNING in results.warnings
        assert results.metadata["degraded"] is True

    async def test_exact_failure_is_fatal(self, orchestrator, fake_backend, vehicle_factory):
        fake_backend.vector_hits = hits(vehicle_factory, ("c", 0.8))
        fake_backend.filter_error = ExternalServiceError("down", service="search", status_code=500)

        with pytest.raises(ExternalServiceError):
            await orchestrator.search(self.hybrid_query())


# =============================================================================
# 5. Deadline
# =============================================================================

class TestDeadline:

    async def test_timeout_returns_cancelled(self, fake_backend, mock_embeddings, test_settings):
        async def slow_filter(odata_filter, top):
            await asyncio.sleep(5)
            return []

        fake_backend.filter_search = slow_filter
        orchestrator = SearchOrchestrator(fake_backend, mock_embeddings, settings=test_settings)

        results = await orchestrator.search(query_of(exact("make", "Ford")), timeout=0.05)

        assert results.cancelled is True
        assert results.results == []
        assert any("cancelled" in w for w in results.warnings)


# =============================================================================
# 6. Validation
# =============================================================================

class TestValidation:

    @pytest.mark.parametrize("max_results", [0, -1, 101])
    async def test_max_results_bounds(self, orchestrator, max_results):
        with pytest.raises(ValidationError):
            await orchestrator.search(query_of(exact("make", "Ford")), max_results=max_results)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

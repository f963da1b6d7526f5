"""
End-to-end vehicle search pipeline.

    ParsedQuery
      -> AttributeMapper      (entities -> constraints)
      -> QueryComposer        (groups, conflicts, filter)
      -> SearchOrchestrator   (exact / semantic / hybrid retrieval)
      -> ResultRankingService (factors, business rules, diversity)
      -> ConceptualMapper     (per-result explanations)

Configuration (qualitative terms, concepts, rules) is loaded once when the
pipeline is built and shared read-only across requests.
"""

import threading
from dataclasses import replace
from typing import List, Optional

from config.constants import DEFAULT_RANKING_CONFIG
from config.settings import get_settings
from core.exceptions import ValidationError
from core.logging import get_logger
from search.attribute_mapper import AttributeMapper
from search.backend import RestSearchBackend, SearchBackend
from search.conceptual_mapper import ConceptualMapper
from search.constraint_parser import ConstraintParser, load_qualitative_terms
from search.embeddings import CachedEmbeddingService, OpenAIEmbeddingClient
from search.models import (
    ComposedQuery,
    ExplainedScore,
    ParsedQuery,
    RerankingStrategy,
    SearchResults,
    SimilarityScore,
    VehicleResult,
)
from search.orchestrator import SearchOrchestrator
from search.query_composer import QueryComposer
from search.ranking import ResultRankingService

logger = get_logger(__name__)


class VehicleSearchPipeline:
    """Wires the search components together. One instance per process."""

    def __init__(
        self,
        backend: Optional[SearchBackend] = None,
        embeddings=None,
        mapper: Optional[AttributeMapper] = None,
        composer: Optional[QueryComposer] = None,
        ranking: Optional[ResultRankingService] = None,
        conceptual_mapper: Optional[ConceptualMapper] = None,
        settings=None,
    ):
        self._settings = settings or get_settings()
        self.backend = backend or RestSearchBackend()
        self.embeddings = embeddings or CachedEmbeddingService(OpenAIEmbeddingClient())

        if mapper is None:
            parser = ConstraintParser(
                qualitative_terms=load_qualitative_terms(self._settings.qualitative_terms_path),
                approximate_band=self._settings.approximate_band,
            )
            mapper = AttributeMapper(parser)
        self.mapper = mapper
        self.composer = composer or QueryComposer()
        self.orchestrator = SearchOrchestrator(self.backend, self.embeddings, settings=self._settings)
        if ranking is None:
            ranking = ResultRankingService(config=replace(
                DEFAULT_RANKING_CONFIG,
                MAX_PER_MAKE=self._settings.max_per_make,
                MAX_PER_MODEL=self._settings.max_per_model,
            ))
        self.ranking = ranking
        self.conceptual_mapper = conceptual_mapper or ConceptualMapper()

    def compose(self, parsed_query: ParsedQuery) -> ComposedQuery:
        mapped = self.mapper.map_to_search_query(parsed_query)
        return self.composer.compose_query(mapped)

    async def search(
        self,
        parsed_query: ParsedQuery,
        max_results: Optional[int] = None,
        rerank: bool = True,
        timeout: Optional[float] = None,
    ) -> SearchResults:
        """
        Run the full pipeline for one request.

        When re-ranking, retrieval over-fetches so diversity filtering can
        still fill ``max_results``.

        Raises:
            ValidationError: max_results outside 1..max_results_limit.
            ExternalServiceError: Backend failure (after retries, and after
                hybrid degradation where possible).
        """
        settings = self._settings
        if max_results is None:
            max_results = settings.default_max_results
        if max_results < 1 or max_results > settings.max_results_limit:
            raise ValidationError(
                f"max_results must be between 1 and {settings.max_results_limit}",
                field="max_results",
            )

        composed = self.compose(parsed_query)
        fetch = max_results
        if rerank:
            fetch = min(settings.max_results_limit, max_results * settings.semantic_overfetch_factor)

        results = await self.orchestrator.search(
            composed,
            max_results=fetch,
            original_query=parsed_query.original_query,
            timeout=timeout,
        )
        if results.cancelled:
            return results.model_copy(update={"query_type": composed.type})

        ranked = results.results
        if rerank and ranked:
            ranked = self.ranking.rank_results(ranked, composed)
        ranked = self._with_explanations(ranked[:max_results], parsed_query)

        logger.info(
            "Pipeline completed",
            query_type=composed.type.value,
            strategy=results.strategy.type.value,
            retrieved=results.total_count,
            returned=len(ranked),
            reranked=rerank,
        )
        return results.model_copy(update={
            "results": ranked,
            "total_count": len(ranked),
            "query_type": composed.type,
        })

    def _with_explanations(self, results: List[VehicleResult], parsed_query: ParsedQuery) -> List[VehicleResult]:
        if not parsed_query.entities:
            return results
        explained = []
        for result in results:
            semantic = result.score_breakdown.semantic_score or None
            explanation = self.conceptual_mapper.explain_relevance(result.vehicle, parsed_query, semantic)
            explained.append(result.model_copy(update={"explanation": explanation.explanation}))
        return explained

    def rerank(
        self,
        results: List[VehicleResult],
        strategy: Optional[RerankingStrategy] = None,
        query: Optional[ComposedQuery] = None,
    ) -> List[VehicleResult]:
        if strategy is None:
            return self.ranking.rank_results(results, query)
        return self.ranking.rerank_results(results, strategy, query)

    async def explain(
        self,
        vehicle_id: str,
        parsed_query: ParsedQuery,
        semantic_score: Optional[float] = None,
    ) -> Optional[ExplainedScore]:
        """None when the vehicle is not in the index."""
        vehicle = await self.backend.get_vehicle(vehicle_id)
        if vehicle is None:
            return None
        return self.conceptual_mapper.explain_relevance(vehicle, parsed_query, semantic_score)

    async def similarity(self, vehicle_id: str, concept: str) -> Optional[SimilarityScore]:
        """
        Raises:
            ValidationError: Unknown concept.
        """
        mapping = self.conceptual_mapper.map_concept_to_attributes(concept)
        if mapping is None:
            raise ValidationError(
                f"Unknown concept '{concept}'. Known concepts: {', '.join(self.conceptual_mapper.concepts)}",
                field="concept",
            )
        vehicle = await self.backend.get_vehicle(vehicle_id)
        if vehicle is None:
            return None
        return self.conceptual_mapper.compute_similarity(vehicle, mapping)

    async def close(self) -> None:
        close_backend = getattr(self.backend, "close", None)
        if close_backend is not None:
            await close_backend()
        close_embeddings = getattr(self.embeddings, "close", None)
        if close_embeddings is not None:
            await close_embeddings()


# =============================================================================
# Singleton
# =============================================================================

_pipeline: Optional[VehicleSearchPipeline] = None
_pipeline_lock = threading.Lock()


def get_search_pipeline() -> VehicleSearchPipeline:
    """Get or create the VehicleSearchPipeline singleton (thread-safe)."""
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = VehicleSearchPipeline()
    return _pipeline


async def shutdown_search_pipeline() -> None:
    """Close clients held by the singleton, if it was created."""
    global _pipeline
    with _pipeline_lock:
        pipeline, _pipeline = _pipeline, None
    if pipeline is not None:
        await pipeline.close()

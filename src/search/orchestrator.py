"""
SearchOrchestrator: strategy selection and execution.

Strategy is a function of the composed query's shape:

    exact/range only        -> ExactOnly    {exact_match: 1.0}
    semantic only           -> SemanticOnly {semantic_search: 1.0}
    both                    -> Hybrid       exact = min(0.7, 0.15 * e)
    neither                 -> SemanticOnly over the raw query text

Hybrid runs the exact and vector legs concurrently and fuses them with
RRF. If only the semantic leg fails, the request degrades to the exact
results with a warning.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

from config.constants import DEFAULT_STRATEGY_CONFIG, StrategyConfig
from config.settings import get_settings
from core.exceptions import ConfigurationError, ExternalServiceError, ValidationError
from core.logging import get_logger
from core.utils import mean
from search.backend import SearchBackend, SearchHit
from search.embeddings import prepare_query_for_embedding
from search.models import (
    ComposedQuery,
    ConstraintGroup,
    ConstraintType,
    ScoreBreakdown,
    SearchApproach,
    SearchConstraint,
    SearchResults,
    SearchStrategy,
    StrategyType,
    VehicleResult,
)
from search.odata import ODataTranslator
from search.rrf import RRFMerger

logger = get_logger(__name__)


STRUCTURED_TYPES = (ConstraintType.EXACT, ConstraintType.RANGE)
SEMANTIC_DEGRADED_WARNING = "Semantic search unavailable; showing exact matches only"


def count_constraints(query: ComposedQuery) -> Tuple[int, int]:
    """(exact/range count, semantic count)."""
    constraints = query.all_constraints()
    exact = sum(1 for c in constraints if c.type in STRUCTURED_TYPES)
    semantic = sum(1 for c in constraints if c.type == ConstraintType.SEMANTIC)
    return exact, semantic


def semantic_query_text(query: ComposedQuery, original_query: str = "") -> str:
    """
    Text to embed for the vector leg.

    Qualitative terms behind semantic constraints, in order and deduplicated;
    the original query text when there are none.
    """
    terms: List[str] = []
    for c in query.all_constraints():
        if c.type != ConstraintType.SEMANTIC:
            continue
        term = c.source_term or _value_text(c)
        if term and term not in terms:
            terms.append(term)
    if terms:
        return " ".join(terms)
    return (original_query or "").strip()


def _value_text(constraint: SearchConstraint) -> str:
    value = constraint.value
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value)
    return "" if value is None else str(value)


class SearchOrchestrator:
    """Chooses and runs exact, semantic or hybrid retrieval."""

    def __init__(
        self,
        backend: SearchBackend,
        embeddings,
        merger: Optional[RRFMerger] = None,
        translator: Optional[ODataTranslator] = None,
        config: StrategyConfig = DEFAULT_STRATEGY_CONFIG,
        settings=None,
    ):
        self._settings = settings or get_settings()
        self._backend = backend
        self._embeddings = embeddings
        self._merger = merger or RRFMerger(k=self._settings.rrf_k)
        self._translator = translator or ODataTranslator()
        self._config = config

    # -------------------------------------------------------------------------
    # Strategy
    # -------------------------------------------------------------------------

    def determine_strategy(self, query: ComposedQuery) -> SearchStrategy:
        exact, semantic = count_constraints(query)
        logger.info("Determining strategy", exact_constraints=exact, semantic_constraints=semantic)

        if semantic == 0 and exact > 0:
            return SearchStrategy(
                type=StrategyType.EXACT_ONLY,
                approaches=[SearchApproach.EXACT_MATCH],
                weights={SearchApproach.EXACT_MATCH: 1.0},
                should_rerank=False,
            )

        if exact > 0 and semantic > 0:
            exact_weight = min(self._config.MAX_EXACT_WEIGHT, exact * self._config.EXACT_WEIGHT_PER_CONSTRAINT)
            semantic_weight = 1.0 - exact_weight
            logger.info(
                "Selected hybrid strategy",
                exact_weight=round(exact_weight, 2),
                semantic_weight=round(semantic_weight, 2),
            )
            return SearchStrategy(
                type=StrategyType.HYBRID,
                approaches=[SearchApproach.EXACT_MATCH, SearchApproach.SEMANTIC_SEARCH],
                weights={
                    SearchApproach.EXACT_MATCH: exact_weight,
                    SearchApproach.SEMANTIC_SEARCH: semantic_weight,
                },
                should_rerank=True,
            )

        # Semantic only, or nothing structured at all
        return SearchStrategy(
            type=StrategyType.SEMANTIC_ONLY,
            approaches=[SearchApproach.SEMANTIC_SEARCH],
            weights={SearchApproach.SEMANTIC_SEARCH: 1.0},
            should_rerank=False,
        )

    def structured_filter(self, query: ComposedQuery) -> str:
        """Filter over exact/range constraints only; semantic ones are soft."""
        groups = []
        for group in query.constraint_groups:
            members = [c for c in group.constraints if c.type in STRUCTURED_TYPES]
            if members:
                groups.append(ConstraintGroup(constraints=members, operator=group.operator, priority=group.priority))
        structured = ComposedQuery(
            type=query.type,
            constraint_groups=groups,
            group_operator=query.group_operator,
        )
        return self._translator.to_filter(structured)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def search(
        self,
        query: ComposedQuery,
        max_results: int = 10,
        original_query: str = "",
        timeout: Optional[float] = None,
    ) -> SearchResults:
        """
        Determine the strategy and execute it under a deadline.

        On timeout the in-flight backend calls are cancelled and an empty
        result flagged ``cancelled`` is returned.
        """
        strategy = self.determine_strategy(query)
        deadline = timeout if timeout is not None else self._settings.request_deadline_seconds
        start = time.perf_counter()

        try:
            return await asyncio.wait_for(
                self.execute_search(query, strategy, max_results, original_query),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.warning("Search deadline exceeded", deadline_seconds=deadline, elapsed_ms=round(elapsed_ms, 1))
            return SearchResults(
                strategy=strategy,
                search_duration_ms=elapsed_ms,
                warnings=list(query.warnings) + [f"Search cancelled after {deadline}s deadline"],
                cancelled=True,
                metadata={"strategy": strategy.type.value, "cancelled": True},
            )

    async def execute_search(
        self,
        query: ComposedQuery,
        strategy: SearchStrategy,
        max_results: int = 10,
        original_query: str = "",
    ) -> SearchResults:
        limit = self._settings.max_results_limit
        if max_results <= 0 or max_results > limit:
            raise ValidationError(f"max_results must be between 1 and {limit}", field="max_results")

        logger.info("Executing search", strategy=strategy.type.value, max_results=max_results)
        start = time.perf_counter()

        if strategy.type == StrategyType.EXACT_ONLY:
            results, metadata, warnings, degraded = await self._execute_exact(query, max_results)
        elif strategy.type == StrategyType.SEMANTIC_ONLY:
            results, metadata, warnings, degraded = await self._execute_semantic(query, max_results, original_query)
        elif strategy.type == StrategyType.HYBRID:
            results, metadata, warnings, degraded = await self._execute_hybrid(
                query, strategy, max_results, original_query
            )
        else:
            raise ConfigurationError(f"Strategy type {strategy.type.value} is not supported")

        duration_ms = (time.perf_counter() - start) * 1000
        metadata.update({
            "strategy": strategy.type.value,
            "degraded": degraded,
            "averageScore": round(mean(r.score for r in results), 4),
        })
        logger.info(
            "Search completed",
            strategy=strategy.type.value,
            results=len(results),
            duration_ms=round(duration_ms, 1),
            degraded=degraded,
        )
        return SearchResults(
            results=results,
            total_count=len(results),
            strategy=strategy,
            search_duration_ms=duration_ms,
            warnings=list(query.warnings) + warnings,
            degraded=degraded,
            metadata=metadata,
        )

    async def _execute_exact(self, query: ComposedQuery, max_results: int):
        odata_filter = self.structured_filter(query)
        start = time.perf_counter()
        results = await self._exact_leg(odata_filter, max_results)
        metadata = {
            "odataFilter": odata_filter,
            "exactDurationMs": round((time.perf_counter() - start) * 1000, 1),
        }
        return results, metadata, [], False

    async def _execute_semantic(self, query: ComposedQuery, max_results: int, original_query: str):
        text = semantic_query_text(query, original_query)
        start = time.perf_counter()
        results = await self._semantic_leg(query, text, max_results, truncate=True)
        metadata = {
            "semanticQuery": text,
            "semanticDurationMs": round((time.perf_counter() - start) * 1000, 1),
        }
        return results, metadata, [], False

    async def _execute_hybrid(
        self,
        query: ComposedQuery,
        strategy: SearchStrategy,
        max_results: int,
        original_query: str,
    ):
        odata_filter = self.structured_filter(query)
        text = semantic_query_text(query, original_query)
        fetch = max_results * self._settings.semantic_overfetch_factor

        exact_outcome, semantic_outcome = await asyncio.gather(
            self._timed(self._exact_leg(odata_filter, fetch)),
            self._timed(self._semantic_leg(query, text, max_results, truncate=False)),
            return_exceptions=True,
        )

        # Exact leg failures are fatal; semantic leg failures degrade
        if isinstance(exact_outcome, BaseException):
            raise exact_outcome
        exact_results, exact_ms = exact_outcome

        metadata: Dict[str, Any] = {
            "odataFilter": odata_filter,
            "semanticQuery": text,
            "exactDurationMs": exact_ms,
            "exactCandidates": len(exact_results),
        }

        if isinstance(semantic_outcome, BaseException):
            if not isinstance(semantic_outcome, ExternalServiceError):
                raise semantic_outcome
            logger.warning(
                "Semantic leg failed; degrading to exact results",
                service=semantic_outcome.service,
                status_code=semantic_outcome.status_code,
                error=str(semantic_outcome),
            )
            return exact_results[:max_results], metadata, [SEMANTIC_DEGRADED_WARNING], True

        semantic_results, semantic_ms = semantic_outcome
        metadata.update({
            "semanticDurationMs": semantic_ms,
            "semanticCandidates": len(semantic_results),
        })

        merged = self._merger.merge(
            exact_results,
            semantic_results,
            weight1=strategy.weight_for(SearchApproach.EXACT_MATCH),
            weight2=strategy.weight_for(SearchApproach.SEMANTIC_SEARCH),
        )
        return merged[:max_results], metadata, [], False

    @staticmethod
    async def _timed(coro):
        start = time.perf_counter()
        result = await coro
        return result, round((time.perf_counter() - start) * 1000, 1)

    # -------------------------------------------------------------------------
    # Legs
    # -------------------------------------------------------------------------

    async def _exact_leg(self, odata_filter: str, top: int) -> List[VehicleResult]:
        if not odata_filter:
            logger.warning("No structured filter for exact search")
            return []

        hits = await self._backend.filter_search(odata_filter, top)
        # All exact matches are equally relevant
        return [
            VehicleResult(
                vehicle=hit.vehicle,
                score=1.0,
                score_breakdown=ScoreBreakdown(exact_match_score=1.0, final_score=1.0),
            )
            for hit in hits[:top]
        ]

    async def _semantic_leg(
        self,
        query: ComposedQuery,
        text: str,
        max_results: int,
        truncate: bool,
    ) -> List[VehicleResult]:
        if not text:
            logger.warning("No text available for semantic search")
            return []

        vector = await self._embeddings.generate_embedding(prepare_query_for_embedding(text))
        k = max_results * self._settings.semantic_overfetch_factor
        prefilter = self.structured_filter(query) or None

        hits = await self._backend.vector_search(vector, k, prefilter)
        results = [self._semantic_result(hit) for hit in hits if hit.score >= self._settings.semantic_min_relevance]
        logger.debug(
            "Semantic leg complete",
            candidates=len(hits),
            above_threshold=len(results),
            prefiltered=prefilter is not None,
        )
        return results[:max_results] if truncate else results

    @staticmethod
    def _semantic_result(hit: SearchHit) -> VehicleResult:
        return VehicleResult(
            vehicle=hit.vehicle,
            score=hit.score,
            score_breakdown=ScoreBreakdown(semantic_score=hit.score, final_score=hit.score),
        )

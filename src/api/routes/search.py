"""
Search API Routes.

    POST /search             query -> ranked vehicles
    POST /search/rerank      re-rank a supplied result list
    POST /search/explain     why one vehicle matches a parsed query
    POST /search/similarity  one vehicle against one qualitative concept

Routes are ``async def``: the backend and embedding clients are async.
Pipeline errors are mapped to HTTP responses by the handlers in api.app.
"""

from fastapi import APIRouter, HTTPException

from core.exceptions import SearchCancelledError
from core.logging import bind_context, get_logger
from search.models import (
    ExplainedScore,
    ExplainRequest,
    RerankRequest,
    RerankResponse,
    SearchRequest,
    SearchResponse,
    SimilarityRequest,
    SimilarityScore,
)
from search.pipeline import get_search_pipeline

logger = get_logger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])


@router.post(
    "",
    response_model=SearchResponse,
    summary="Search vehicles",
)
async def search(request: SearchRequest) -> SearchResponse:
    """
    Search the vehicle inventory.

    Pass ``entities`` already extracted by the NLU service to get structured
    filtering; without them the raw query text is searched semantically.
    """
    if request.session_id:
        bind_context(session_id=request.session_id)

    pipeline = get_search_pipeline()
    results = await pipeline.search(
        request.to_parsed_query(),
        max_results=request.max_results,
        rerank=request.rerank,
    )
    if results.cancelled:
        raise SearchCancelledError("Search did not complete before the request deadline")

    return SearchResponse(
        results=results.results,
        total_count=results.total_count,
        strategy=results.strategy,
        search_duration=f"{results.search_duration_ms:.0f}ms",
        query_type=results.query_type,
        warnings=results.warnings,
        degraded=results.degraded,
    )


@router.post(
    "/rerank",
    response_model=RerankResponse,
    summary="Re-rank a result list",
)
async def rerank(request: RerankRequest) -> RerankResponse:
    """Re-rank with the supplied strategy, or the default one when omitted."""
    pipeline = get_search_pipeline()
    results = pipeline.rerank(request.results, request.strategy, request.query)
    return RerankResponse(results=results)


@router.post(
    "/explain",
    response_model=ExplainedScore,
    summary="Explain a vehicle's relevance",
)
async def explain(request: ExplainRequest) -> ExplainedScore:
    pipeline = get_search_pipeline()
    explained = await pipeline.explain(request.vehicle_id, request.query, request.semantic_score)
    if explained is None:
        raise HTTPException(status_code=404, detail=f"Vehicle {request.vehicle_id} not found")
    return explained


@router.post(
    "/similarity",
    response_model=SimilarityScore,
    summary="Score a vehicle against a concept",
)
async def similarity(request: SimilarityRequest) -> SimilarityScore:
    pipeline = get_search_pipeline()
    score = await pipeline.similarity(request.vehicle_id, request.concept)
    if score is None:
        raise HTTPException(status_code=404, detail=f"Vehicle {request.vehicle_id} not found")
    return score

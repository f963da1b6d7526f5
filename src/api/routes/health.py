"""
Health check endpoints.

Configuration checks only: probing the search backend or the embedding
provider would spend quota on every poll.
"""

from typing import Any, Dict

from fastapi import APIRouter

from config.settings import get_settings


router = APIRouter(tags=["Health"])

SERVICE_NAME = "vehicle-search-api"


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Basic health check."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
    }


@router.get("/health/detailed")
async def detailed_health_check() -> Dict[str, Any]:
    """
    Health with dependency configuration status.

    Checks:
    - Search backend endpoint and key present
    - Embedding provider key present
    """
    settings = get_settings()
    search_status = "configured" if settings.search_configured else "not_configured"
    embeddings_status = "configured" if settings.embeddings_configured else "not_configured"

    return {
        "status": "healthy" if settings.search_configured and settings.embeddings_configured else "degraded",
        "service": SERVICE_NAME,
        "environment": settings.environment,
        "checks": {
            "config": "ok",
            "search_backend": {
                "status": search_status,
                "index": settings.search_index_name,
            },
            "embeddings": {
                "status": embeddings_status,
                "model": settings.embedding_model,
            },
        },
    }


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """
    Kubernetes-style readiness probe.

    Exact search needs the backend; semantic search also needs embeddings.
    """
    settings = get_settings()
    if not settings.search_configured:
        return {"status": "not_ready", "reason": "search_backend_not_configured"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """Kubernetes-style liveness probe."""
    return {"status": "alive"}

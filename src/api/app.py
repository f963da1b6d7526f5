"""
FastAPI Application Factory.

Usage:
    # Development
    uvicorn api.app:create_app --factory --reload

    # Production
    uvicorn api.app:app --host 0.0.0.0 --port 8000 --workers 4
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from core.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    SearchCancelledError,
    ValidationError,
    VehicleSearchError,
)
from core.logging import configure_logging, get_logger
from core.middleware import RequestTracingMiddleware
from search.pipeline import shutdown_search_pipeline


logger = get_logger(__name__)


# Error type -> HTTP status. Checked in order; subclasses first.
ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (ConfigurationError, 422),
    (ExternalServiceError, 502),
    (SearchCancelledError, 504),
    (VehicleSearchError, 500),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup configures logging; the search pipeline is built lazily on the
    first request. Shutdown closes its HTTP clients.
    """
    settings = get_settings()

    configure_logging(
        json_logs=settings.is_production,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    logger.info(
        "Starting vehicle search API",
        environment=settings.environment,
        port=settings.port,
        search_configured=settings.search_configured,
        embeddings_configured=settings.embeddings_configured,
    )

    yield

    logger.info("Shutting down vehicle search API")
    await shutdown_search_pipeline()


async def handle_search_error(request: Request, exc: VehicleSearchError) -> JSONResponse:
    status_code = next(code for error_type, code in ERROR_STATUS_CODES if isinstance(exc, error_type))
    log = logger.warning if status_code < 500 else logger.error
    log(
        "Search request failed",
        error_type=type(exc).__name__,
        error=str(exc),
        status_code=status_code,
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Vehicle Search API",
        description="""
        Natural-language vehicle search over an indexed inventory.

        ## Main Endpoints

        - `POST /search` - exact, semantic or hybrid search with re-ranking
        - `POST /search/rerank` - re-rank a result list
        - `POST /search/explain` - relevance explanation for one vehicle
        - `POST /search/similarity` - one vehicle against one concept

        ## Health Checks

        - `/health` - Basic health check
        - `/health/detailed` - Dependency configuration status
        - `/ready` - Kubernetes readiness probe
        - `/live` - Kubernetes liveness probe
        """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # =========================================================================
    # Middleware (order matters - first added = outermost)
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request tracing (adds X-Request-ID, binds session_id, logs timing)
    app.add_middleware(RequestTracingMiddleware)

    # =========================================================================
    # Error handlers
    # =========================================================================

    app.add_exception_handler(VehicleSearchError, handle_search_error)

    # =========================================================================
    # Routes
    # =========================================================================

    from api.routes.health import router as health_router
    app.include_router(health_router)

    from api.routes.search import router as search_router
    app.include_router(search_router)

    return app


# Create default app instance for uvicorn
# Usage: uvicorn api.app:app
app = create_app()


# Run with: PYTHONPATH=src python -m api.app
if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.app:app",
        host=settings.host,
        port=settings.port,
        workers=1 if settings.debug else settings.workers,
        reload=settings.debug,
    )

"""FastAPI app with health, match, analytics and admin endpoints.

The matching service is built once in the lifespan and kept on
``app.state.service``. A corpus that cannot be loaded aborts startup.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from .config import settings
from .errors import CorpusFatal
from .experiments import ExperimentConfig, Strategy
from .logging_config import setup_logging
from .pipelines.matching import MatchingService, MatchOptions, SelectionResult

logger = logging.getLogger(__name__)


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    corpus: dict[str, Any] = Field(default_factory=dict)
    generative_available: bool = False


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class MatchRequest(BaseModel):
    """Match request: raw questionnaire plus optional overrides."""
    profile: dict[str, Any] = Field(default_factory=dict)
    options: MatchOptions = Field(default_factory=MatchOptions)


class ExperimentUpdate(BaseModel):
    """Partial experiment config update; unset fields keep their value."""
    enabled: bool | None = None
    generative_percentage: int | None = None
    semantic_percentage: int | None = None
    default_strategy: Strategy | None = None
    semantic_threshold: float | None = None
    students_count: int | None = None
    faculty_count: int | None = None
    alumni_count: int | None = None


class ReloadResponse(BaseModel):
    """Admin reload response."""
    status: str
    stats: dict[str, Any]


def get_service(request: Request) -> MatchingService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise CorpusFatal("Matching service is not initialized")
    return service


def create_app(service: MatchingService | None = None) -> FastAPI:
    """Build the API.

    Args:
        service: Prebuilt service (tests); built from settings when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown logic."""
        # Startup
        setup_logging(settings.logging)
        logger.info("Application starting up")
        if service is not None:
            app.state.service = service
        else:
            app.state.service = MatchingService.from_settings(settings)
        logger.info(f"Corpus loaded: {app.state.service.corpus.stats(app.state.service.vocabulary)}")

        yield

        # Shutdown
        await app.state.service.cache.drain()
        logger.info("Application shutting down")

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        description="Family to student, faculty and alumni matching",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:3001"],  # Frontend URLs
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CorpusFatal)
    async def corpus_error_handler(request, exc: CorpusFatal):
        """Handle an unavailable corpus or index."""
        logger.error(f"Corpus error: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=ErrorResponse(
                error="corpus_unavailable",
                detail=str(exc),
            ).model_dump(),
        )

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        """Health check endpoint."""
        svc = get_service(request)
        return HealthResponse(
            status="ok",
            version=settings.version,
            corpus=svc.corpus.stats(svc.vocabulary),
            generative_available=svc.selector.available,
        )

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "app": settings.app_name,
            "version": settings.version,
            "endpoints": {
                "health": "/health",
                "match": "/match",
                "analytics_recent": "/analytics/recent",
                "analytics_stats": "/analytics/stats",
                "experiment": "/experiment",
                "reload": "/admin/reload",
                "docs": "/docs",
            },
        }

    @app.post("/match", response_model=SelectionResult, status_code=status.HTTP_200_OK)
    async def match(request: Request, body: MatchRequest) -> SelectionResult:
        """Match a family questionnaire.

        Degraded input and unavailable optional stages never produce an
        error; the result records which strategy actually ran.
        """
        svc = get_service(request)
        try:
            return await svc.match(body.profile, body.options)
        except CorpusFatal:
            raise
        except Exception as e:
            logger.error(f"Unexpected error during match: {e}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Internal server error: {str(e)}",
            )

    @app.get("/analytics/recent")
    async def analytics_recent(request: Request, count: int = Query(default=10, ge=1, le=100)) -> list[dict]:
        """Most recent analytics entries, oldest first."""
        return [asdict(e) for e in get_service(request).analytics.recent(count)]

    @app.get("/analytics/stats")
    async def analytics_stats(request: Request, window: int | None = Query(default=None, ge=1, le=1000)) -> dict:
        """Aggregate timings and strategy mix."""
        return get_service(request).analytics.performance_stats(window)

    @app.get("/experiment", response_model=ExperimentConfig)
    async def get_experiment(request: Request) -> ExperimentConfig:
        return get_service(request).router.config

    @app.put("/experiment", response_model=ExperimentConfig)
    async def update_experiment(request: Request, update: ExperimentUpdate) -> ExperimentConfig:
        """Validate and swap the experiment config; invalid changes leave it untouched."""
        changes = update.model_dump(exclude_none=True)
        try:
            return get_service(request).router.update(**changes)
        except ValidationError as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=[{"loc": err["loc"], "msg": err["msg"]} for err in e.errors()],
            )

    @app.post("/admin/reload", response_model=ReloadResponse)
    async def reload(request: Request) -> ReloadResponse:
        """Reload corpus and embedding index; the old snapshot survives a failure."""
        stats = await get_service(request).reload()
        return ReloadResponse(status="reloaded", stats=stats)

    return app


app = create_app()

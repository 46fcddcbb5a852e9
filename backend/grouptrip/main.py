from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
import structlog

from grouptrip.api import optimization
from grouptrip.core.logging import configure_logging
from grouptrip.core.pipeline import TripOptimizationService
from grouptrip.core.settings import Settings
from grouptrip.db.repository import InMemoryTripRepository
from grouptrip.middleware.request_logging import RequestLoggingMiddleware

logger = structlog.get_logger(__name__)


def create_app(
    service: Optional[TripOptimizationService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings)

    if service is None:
        # Without an external store the API plans trips registered in memory
        repository = InMemoryTripRepository()
        service = TripOptimizationService(repository, repository, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("application_starting")
        yield
        logger.info(
            "application_stopping",
            stage_statistics=app.state.optimization_service.stats_store.snapshot(),
        )

    app = FastAPI(
        title="Group Trip Optimizer API",
        description="Fair multi-day route planning for travel groups",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.optimization_service = service
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(optimization.router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()

"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from fieldops.controllers.allocation_controller import router as allocation_router
from fieldops.controllers.schedule_controller import router as schedule_router
from fieldops.repository.data_repository import DataRepository
from fieldops.services.allocation_service import AllocationService
from fieldops.services.booking_state_service import BookingStateService
from fieldops.services.geo_service import CoordinateLookup, GeoEstimator
from fieldops.services.pricing_service import PricingService
from fieldops.services.route_service import RouteService
from fieldops.utils.config import Settings, get_settings
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    lookup: Optional[CoordinateLookup] = None,
) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every service gets its collaborators explicitly and is exposed through
    app.state for the controller dependency providers.
    """
    settings = settings or get_settings()

    # --- Repository (single SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services ---
    geo = GeoEstimator(lookup=lookup, repository=repository, settings=settings)
    pricing_service = PricingService(repository=repository, settings=settings, geo=geo)
    allocation_service = AllocationService(
        repository=repository,
        settings=settings,
        geo=geo,
        pricing=pricing_service,
    )
    route_service = RouteService(repository=repository, settings=settings, geo=geo)
    booking_state_service = BookingStateService(repository=repository, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app, settings)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.include_router(allocation_router)
    app.include_router(schedule_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.app_version}

    app.state.repository = repository
    app.state.geo = geo
    app.state.pricing_service = pricing_service
    app.state.allocation_service = allocation_service
    app.state.route_service = route_service
    app.state.booking_state_service = booking_state_service

    return app


def _startup(app: FastAPI, settings: Settings) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema must exist before seeding; seeding is skipped once engineers exist.
    """
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo data (skipped if Engineers table not empty)")
        repository.seed_demo_data()

    logger.info("Startup complete | database=%s", repository.database_path)


# Module-level app object for uvicorn
app = create_app()

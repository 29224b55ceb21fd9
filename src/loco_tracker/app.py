"""FastAPI application for loco-tracker.

A thin HTTP surface over the collector: live lookups, reads of cached
positions, and a manual cycle trigger. Authentication and CORS are left
to the deployment in front of it.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request

from loco_tracker import __version__
from loco_tracker.collection.live import LiveLookupError
from loco_tracker.config import settings
from loco_tracker.container import ServiceContainer
from loco_tracker.logging_setup import configure_logging
from loco_tracker.models.observation import PositionOut
from loco_tracker.storage.store import DEFAULT_HISTORY_LIMIT


def get_services(request: Request) -> ServiceContainer:
    """Dependency returning the process's ServiceContainer."""
    return request.app.state.services


Services = Annotated[ServiceContainer, Depends(get_services)]
LocoNo = Annotated[int, Path(ge=1)]


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    """Build the application.

    Args:
        services: Pre-built container (tests). When omitted, the lifespan
            builds one from settings and owns its shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler."""
        configure_logging(settings.log_level)
        if services is not None:
            yield
            return

        container = ServiceContainer.build()
        app.state.services = container
        try:
            await container.orchestrator.connect()
            if settings.collector_enabled:
                container.start_background()
            yield
        finally:
            await container.aclose()

    app = FastAPI(
        title="loco-tracker",
        description="Live locomotive positions collected from the upstream railway API",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    @app.get("/api/live/loco/{loco_no}", response_model=PositionOut)
    async def live_loco(loco_no: LocoNo, services: Services) -> PositionOut:
        """Fresh position from upstream; cached in the background."""
        try:
            observation = await services.live.fetch_and_cache_one(loco_no)
        except LiveLookupError as e:
            raise HTTPException(status_code=502, detail="Upstream lookup failed") from e
        if observation is None:
            raise HTTPException(
                status_code=404,
                detail="Loco not found or has no position data upstream",
            )
        return observation.to_public()

    @app.get("/api/search/loco/{loco_no}", response_model=PositionOut)
    async def latest_loco(loco_no: LocoNo, services: Services) -> PositionOut:
        row = await services.store.latest_for_loco(loco_no)
        if row is None:
            raise HTTPException(status_code=404, detail="Loco not found in database")
        return PositionOut.from_row(row)

    @app.get("/api/search/train/{train_no}", response_model=PositionOut)
    async def latest_train(
        train_no: Annotated[int, Path(ge=1)], services: Services
    ) -> PositionOut:
        row = await services.store.latest_for_train(train_no)
        if row is None:
            raise HTTPException(status_code=404, detail="Train not found in database")
        return PositionOut.from_row(row)

    @app.get("/api/loco/{loco_no}/history", response_model=list[PositionOut])
    async def loco_history(
        loco_no: LocoNo,
        services: Services,
        limit: Annotated[int, Query(ge=1, le=DEFAULT_HISTORY_LIMIT)] = DEFAULT_HISTORY_LIMIT,
    ) -> list[PositionOut]:
        rows = await services.store.history(loco_no, limit=limit)
        return [PositionOut.from_row(row) for row in rows]

    @app.post("/api/collect")
    async def trigger_collect(services: Services) -> dict[str, Any]:
        """Run one collection cycle now."""
        report = await services.orchestrator.collect_cycle()
        if report is None:
            raise HTTPException(status_code=409, detail="A collection cycle is already running")
        return {
            "skipped": report.skipped,
            "error": report.error,
            "directory_size": report.directory_size,
            "inserted": report.inserted,
            "updated": report.updated,
            "failed": report.failed,
            "no_data": report.no_data,
            "rejected": report.rejected,
            "write_failed": report.write_failed,
        }

    return app


app = create_app()

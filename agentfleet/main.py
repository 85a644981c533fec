"""
FastAPI application entry point
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from agentfleet.api import hosts, tasks, tenants
from agentfleet.api.deps import verify_internal_secret
from agentfleet.config import settings
from agentfleet.core.fleet import Fleet
from agentfleet.errors import FleetError
from agentfleet.middleware.metrics_middleware import MetricsMiddleware
from agentfleet.utils.metrics import CONTENT_TYPE_LATEST, get_metrics

logger = logging.getLogger(__name__)


def configure_logging(level: str = settings.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    owns_fleet = app.state.fleet is None
    if owns_fleet:
        app.state.fleet = await Fleet.from_settings()
    fleet: Fleet = app.state.fleet
    if app.state.run_background_jobs:
        await fleet.start()

    yield

    # Shutdown
    if owns_fleet:
        await fleet.stop()
    else:
        await fleet.scheduler.stop()
        await fleet.runaway.stop_all()


async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[api] {request.method} {request.url.path}: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "message": exc.message})


def create_app(
    fleet: Optional[Fleet] = None,
    internal_secret: Optional[str] = settings.INTERNAL_SECRET,
    run_background_jobs: bool = True,
) -> FastAPI:
    app = FastAPI(
        title=settings.API_TITLE,
        version=settings.API_VERSION,
        description=settings.API_DESCRIPTION,
        lifespan=lifespan,
    )
    app.state.fleet = fleet
    app.state.internal_secret = internal_secret
    app.state.run_background_jobs = run_background_jobs

    app.add_middleware(MetricsMiddleware)
    app.add_exception_handler(FleetError, fleet_error_handler)

    internal = [Depends(verify_internal_secret)]
    app.include_router(hosts.router, prefix="/internal/hosts", tags=["hosts"], dependencies=internal)
    app.include_router(tenants.router, prefix="/internal/tenants", tags=["tenants"], dependencies=internal)
    app.include_router(tasks.router, prefix="/internal/tasks", tags=["tasks"], dependencies=internal)

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        loads = await app.state.fleet.registry.host_load()
        return {
            "status": "healthy",
            "hosts": len(loads),
            "ram_total_mb": sum(load.host.ram_total for load in loads),
            "ram_booked_mb": sum(load.host.ram_used for load in loads),
            "monitored_tasks": app.state.fleet.runaway.monitored_count,
        }

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)

    return app


configure_logging()
app = create_app()

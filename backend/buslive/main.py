"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from buslive.api import diagnostics, routes, session, stops, vehicles, ws
from buslive.config import settings
from buslive.core.broadcaster import Broadcaster
from buslive.core.map_surface import MapSurface
from buslive.core.scheduler import PollingScheduler
from buslive.core.session import RouteSession
from buslive.core.transit_client import TransitClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    client = TransitClient()
    broadcaster = Broadcaster()
    await broadcaster.connect()

    surface = MapSurface(broadcaster)
    scheduler = PollingScheduler()
    scheduler.startup()
    route_session = RouteSession(client, surface, scheduler)

    # Wire up API modules
    ws.broadcaster = broadcaster
    ws.surface = surface
    session.session = route_session
    routes.session = route_session
    stops.session = route_session
    vehicles.session = route_session
    diagnostics.session = route_session

    # Select the default operator and its first route
    try:
        await route_session.on_operator_change(settings.default_operator)
    except Exception:
        logger.exception("Failed to load initial operator %s", settings.default_operator)

    logger.info("Bus live map started - polling every %ds", settings.poll_interval_seconds)

    yield

    # Shutdown
    await route_session.shutdown()
    await client.close()
    await broadcaster.close()
    logger.info("Bus live map shut down")


app = FastAPI(
    title="Hong Kong Bus Live Map",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(session.router)
app.include_router(routes.router)
app.include_router(stops.router)
app.include_router(vehicles.router)
app.include_router(diagnostics.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}

"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trackmate.api import trips, ws
from trackmate.config import settings
from trackmate.core.auth import HttpTokenValidator, JwtTokenValidator
from trackmate.core.broadcaster import Broadcaster
from trackmate.core.eta_calculator import EtaCalculator
from trackmate.core.location_ingest import LocationIngest
from trackmate.core.registry import ConnectionRegistry
from trackmate.core.route_matcher import RouteMatcher
from trackmate.core.scheduler import create_scheduler
from trackmate.core.trips import SecondTripPolicy
from trackmate.db.session import async_session, engine
from trackmate.db.trip_store import SqlTripStore
from trackmate.models.base import Base
from trackmate.models import tables  # noqa: F401
from trackmate.schemas.messages import encode

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_relay(store, validator):
    """Wire registry, broadcaster and ingest from settings."""
    registry = ConnectionRegistry(
        validator,
        auth_timeout=settings.auth_timeout_seconds,
        outbox_size=settings.outbox_size,
        encode=encode,
    )
    broadcaster = Broadcaster(registry)
    eta = EtaCalculator(
        RouteMatcher(max_snap_distance_m=settings.max_snap_distance_m),
        average_speed_mps=settings.eta_average_speed_mps,
        min_plausible_speed_mps=settings.eta_min_plausible_speed_mps,
        max_plausible_speed_mps=settings.eta_max_plausible_speed_mps,
    )
    ingest = LocationIngest(
        store,
        broadcaster,
        eta_calculator=eta,
        min_interval_ms=settings.min_publish_interval_ms,
        arrival_radius_m=settings.arrival_radius_m,
        departure_radius_m=settings.departure_radius_m,
        idle_ttl_seconds=settings.trip_idle_ttl_seconds,
    )
    return registry, broadcaster, ingest


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    store = SqlTripStore(async_session, policy=SecondTripPolicy(settings.second_trip_policy))
    if settings.auth_introspection_url:
        validator = HttpTokenValidator(settings.auth_introspection_url)
    else:
        validator = JwtTokenValidator(settings.jwt_secret, settings.jwt_algorithm)

    registry, broadcaster, ingest = build_relay(store, validator)
    if settings.redis_enabled:
        await broadcaster.connect()

    # Wire up API modules
    ws.registry = registry
    ws.broadcaster = broadcaster
    ws.ingest = ingest
    trips.ingest = ingest
    app.state.registry = registry

    scheduler = create_scheduler(ingest)
    scheduler.start()
    logger.info(
        "TrackMate relay started - throttle %dms, radii %.0f/%.0fm",
        settings.min_publish_interval_ms, settings.arrival_radius_m, settings.departure_radius_m,
    )

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    registry.close()
    await broadcaster.close()
    if isinstance(validator, HttpTokenValidator):
        await validator.close()
    await engine.dispose()
    logger.info("TrackMate relay shut down")


app = FastAPI(
    title="TrackMate Live Relay",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(trips.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    registry = getattr(app.state, "registry", None)
    return {"status": "ok", "liveVisitors": registry.count() if registry else 0}

"""SQLAlchemy-backed TripStore."""

import datetime
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from trackmate.core.stop_detector import EventKind, StopEvent, StopOnRoute
from trackmate.core.trips import (
    RouteInfo,
    SecondTripPolicy,
    TripConflictError,
    TripRecord,
    TripStatus,
    new_trip_id,
)
from trackmate.models.tables import Route, RouteStop, StopEventRow, Trip

logger = logging.getLogger(__name__)


def _utc_from_ms(ms: float) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(ms / 1000, tz=datetime.timezone.utc)


def _route_info(route: Route) -> RouteInfo:
    return RouteInfo(
        id=route.id,
        name=route.name,
        stops=[
            StopOnRoute(stop_id=s.id, name=s.name, lat=s.lat, lon=s.lng, seq=s.seq)
            for s in route.stops
        ],
        geometry=route.geometry,
    )


def _trip_record(trip: Trip) -> TripRecord:
    return TripRecord(
        id=trip.id,
        bus_id=trip.bus_id,
        driver_id=trip.driver_id,
        route=_route_info(trip.route),
        status=TripStatus(trip.status),
        started_at=trip.started_at,
        ended_at=trip.ended_at,
        current_stop_index=trip.current_stop_index,
    )


class SqlTripStore:
    """Reads trips/routes and records stop events through an async session factory."""

    def __init__(self, session_factory, policy: SecondTripPolicy = SecondTripPolicy.REJECT) -> None:
        self.session_factory = session_factory
        self.policy = policy

    async def get_trip(self, trip_id: str) -> TripRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Trip)
                .where(Trip.id == trip_id)
                .options(selectinload(Trip.route).selectinload(Route.stops))
            )
            trip = result.scalar_one_or_none()
            return _trip_record(trip) if trip else None

    async def save_route(self, route: RouteInfo) -> None:
        """Insert or replace a route and its stops."""
        async with self.session_factory() as session:
            existing = await session.get(Route, route.id, options=[selectinload(Route.stops)])
            if existing is None:
                existing = Route(id=route.id)
                session.add(existing)
            existing.name = route.name
            existing.geometry = route.geometry
            existing.stops = [
                RouteStop(id=s.stop_id, seq=s.seq, name=s.name, lat=s.lat, lng=s.lon)
                for s in route.stops
            ]
            await session.commit()

    async def start_trip(
        self, bus_id: str, driver_id: str, route_id: str, trip_id: str | None = None,
    ) -> TripRecord:
        now = datetime.datetime.now(datetime.timezone.utc)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Trip).where(Trip.bus_id == bus_id, Trip.status == TripStatus.ACTIVE.value)
            )
            active = result.scalars().all()
            if active:
                if self.policy is SecondTripPolicy.REJECT:
                    raise TripConflictError(bus_id, active[0].id)
                for prev in active:
                    prev.status = TripStatus.ENDED.value
                    prev.ended_at = now
                    logger.info("Trip %s superseded on bus %s", prev.id, bus_id)
                await session.flush()

            if await session.get(Route, route_id) is None:
                raise KeyError(f"unknown route {route_id}")

            trip = Trip(
                id=trip_id or new_trip_id(),
                bus_id=bus_id,
                driver_id=driver_id,
                route_id=route_id,
                status=TripStatus.ACTIVE.value,
                started_at=now,
                current_stop_index=-1,
            )
            session.add(trip)
            try:
                await session.commit()
            except IntegrityError as e:
                # Lost a race with another start for the same bus
                raise TripConflictError(bus_id, "unknown") from e
            new_id = trip.id

        record = await self.get_trip(new_id)
        assert record is not None
        return record

    async def end_trip(self, trip_id: str) -> TripRecord | None:
        async with self.session_factory() as session:
            await session.execute(
                update(Trip)
                .where(Trip.id == trip_id, Trip.status == TripStatus.ACTIVE.value)
                .values(status=TripStatus.ENDED.value, ended_at=datetime.datetime.now(datetime.timezone.utc))
            )
            await session.commit()
        return await self.get_trip(trip_id)

    async def set_current_stop(self, trip_id: str, index: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Trip).where(Trip.id == trip_id).values(current_stop_index=index)
            )
            await session.commit()

    async def record_stop_event(self, event: StopEvent, lat: float, lng: float) -> None:
        async with self.session_factory() as session:
            session.add(StopEventRow(
                trip_id=event.trip_id,
                stop_index=event.stop_index,
                stop_name=event.stop_name,
                status="ARRIVED" if event.kind is EventKind.ARRIVED else "LEFT",
                lat=lat,
                lng=lng,
                source="auto",
                timestamp=_utc_from_ms(event.timestamp),
            ))
            await session.commit()

    async def list_stop_events(self, trip_id: str) -> list[StopEventRow]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(StopEventRow)
                .where(StopEventRow.trip_id == trip_id)
                .order_by(StopEventRow.timestamp, StopEventRow.id)
            )
            return list(result.scalars().all())

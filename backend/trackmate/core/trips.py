"""Trip records and the persistence interface the relay reads them through."""

import datetime
import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol

from trackmate.core.stop_detector import StopEvent, StopOnRoute

logger = logging.getLogger(__name__)


class TripStatus(str, enum.Enum):
    ACTIVE = "active"
    ENDED = "ended"


class SecondTripPolicy(str, enum.Enum):
    REJECT = "reject"
    SUPERSEDE = "supersede"


class TripConflictError(Exception):
    """A bus already has an active trip and the policy forbids another."""

    def __init__(self, bus_id: str, active_trip_id: str) -> None:
        super().__init__(f"bus {bus_id} already has active trip {active_trip_id}")
        self.bus_id = bus_id
        self.active_trip_id = active_trip_id


@dataclass
class RouteInfo:
    id: str
    name: str
    stops: list[StopOnRoute]
    geometry: list[list[float]] | None = None  # [[lat, lng], ...]


@dataclass
class TripRecord:
    id: str
    bus_id: str
    driver_id: str
    route: RouteInfo
    status: TripStatus = TripStatus.ACTIVE
    started_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc),
    )
    ended_at: datetime.datetime | None = None
    current_stop_index: int = -1

    @property
    def active(self) -> bool:
        return self.status is TripStatus.ACTIVE


class TripStore(Protocol):
    async def get_trip(self, trip_id: str) -> TripRecord | None: ...

    async def start_trip(
        self, bus_id: str, driver_id: str, route_id: str, trip_id: str | None = None,
    ) -> TripRecord: ...

    async def end_trip(self, trip_id: str) -> TripRecord | None: ...

    async def set_current_stop(self, trip_id: str, index: int) -> None: ...

    async def record_stop_event(self, event: StopEvent, lat: float, lng: float) -> None: ...


def new_trip_id() -> str:
    return uuid.uuid4().hex


class MemoryTripStore:
    """In-process TripStore used by tests and local demos."""

    def __init__(self, policy: SecondTripPolicy = SecondTripPolicy.REJECT) -> None:
        self.policy = policy
        self.routes: dict[str, RouteInfo] = {}
        self.trips: dict[str, TripRecord] = {}
        self.stop_events: list[tuple[StopEvent, float, float]] = []

    def add_route(self, route: RouteInfo) -> None:
        self.routes[route.id] = route

    async def get_trip(self, trip_id: str) -> TripRecord | None:
        return self.trips.get(trip_id)

    async def start_trip(
        self, bus_id: str, driver_id: str, route_id: str, trip_id: str | None = None,
    ) -> TripRecord:
        route = self.routes.get(route_id)
        if route is None:
            raise KeyError(f"unknown route {route_id}")

        for existing in self.trips.values():
            if existing.bus_id == bus_id and existing.active:
                if self.policy is SecondTripPolicy.REJECT:
                    raise TripConflictError(bus_id, existing.id)
                await self.end_trip(existing.id)
                logger.info("Trip %s superseded on bus %s", existing.id, bus_id)

        trip = TripRecord(
            id=trip_id or new_trip_id(),
            bus_id=bus_id,
            driver_id=driver_id,
            route=route,
        )
        self.trips[trip.id] = trip
        return trip

    async def end_trip(self, trip_id: str) -> TripRecord | None:
        trip = self.trips.get(trip_id)
        if trip is None or not trip.active:
            return trip
        trip.status = TripStatus.ENDED
        trip.ended_at = datetime.datetime.now(datetime.timezone.utc)
        return trip

    async def set_current_stop(self, trip_id: str, index: int) -> None:
        trip = self.trips.get(trip_id)
        if trip is not None:
            trip.current_stop_index = index

    async def record_stop_event(self, event: StopEvent, lat: float, lng: float) -> None:
        self.stop_events.append((event, lat, lng))

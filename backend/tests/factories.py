"""Shared builders for relay tests: a straight north-bound route near Eluru."""

import itertools

from trackmate.core.auth import AuthError, Identity
from trackmate.core.broadcaster import Broadcaster
from trackmate.core.location_ingest import LocationIngest
from trackmate.core.registry import ConnectionRegistry
from trackmate.core.stop_detector import StopOnRoute
from trackmate.core.trips import MemoryTripStore, RouteInfo

BASE_LAT = 16.695
LNG = 81.10
STEP = 0.005  # ~556m between stops
M_PER_DEG_LAT = 111_195.0  # great-circle meters per degree of latitude


def north_of(lat: float, meters: float) -> float:
    return lat + meters / M_PER_DEG_LAT


def make_stops(n: int = 5) -> list[StopOnRoute]:
    return [
        StopOnRoute(
            stop_id=f"s{i}", name=f"Stop {i}",
            lat=round(BASE_LAT + i * STEP, 6), lon=LNG, seq=i,
        )
        for i in range(n)
    ]


def make_route(route_id: str = "r1", n: int = 5, geometry: list[list[float]] | None = None) -> RouteInfo:
    return RouteInfo(id=route_id, name="Campus Loop", stops=make_stops(n), geometry=geometry)


class StaticValidator:
    """Maps fixed tokens to identities."""

    def __init__(self, tokens: dict[str, Identity]) -> None:
        self.tokens = tokens

    async def validate(self, token: str) -> Identity:
        if token not in self.tokens:
            raise AuthError("unknown token")
        return self.tokens[token]


TOKENS = {
    "driver-1": Identity("d1", "driver"),
    "driver-2": Identity("d2", "driver"),
    "student-1": Identity("u1", "student"),
    "student-2": Identity("u2", "student"),
    "admin-1": Identity("a1", "admin"),
}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def drain(conn) -> list[tuple[str, object]]:
    """Pop everything queued for a connection."""
    out = []
    while not conn.outbox.empty():
        out.append(conn.outbox.get_nowait())
    return out


def names(messages: list[tuple[str, object]]) -> list[str]:
    return [m[0] for m in messages]


class Relay:
    """Registry + broadcaster + ingest over a memory store, no Redis."""

    def __init__(self, min_interval_ms: int = 1000, n_stops: int = 5) -> None:
        self.clock = FakeClock()
        self._ids = itertools.count(1)
        self.store = MemoryTripStore()
        self.store.add_route(make_route(n=n_stops))
        self.registry = ConnectionRegistry(StaticValidator(TOKENS), auth_timeout=1.0)
        self.broadcaster = Broadcaster(self.registry)
        self.ingest = LocationIngest(
            self.store,
            self.broadcaster,
            min_interval_ms=min_interval_ms,
            arrival_radius_m=50,
            departure_radius_m=100,
            clock=self.clock,
            now_ms=lambda: 1_700_000_000_000.0,
        )

    async def connect(self, token: str | None = None, connection_id: str | None = None):
        conn = self.registry.register(connection_id or f"c{next(self._ids)}")
        if token is not None:
            assert await self.registry.authenticate(conn.id, token)
        return conn

    async def start_trip(self, trip_id: str = "t1", bus_id: str = "b1", driver_id: str = "d1"):
        return await self.store.start_trip(bus_id, driver_id, "r1", trip_id=trip_id)


def location(lat: float, lng: float = LNG, trip_id: str = "t1", **extra) -> dict:
    payload = {
        "driverId": "d1", "tripId": trip_id, "busId": "b1",
        "lat": lat, "lng": lng, "accuracy": 5, "speed": 8, "heading": 0,
        "timestamp": 1_700_000_000_000,
    }
    payload.update(extra)
    return payload

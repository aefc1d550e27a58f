"""Driver position ingest: validate, throttle, detect stops, estimate ETA, fan out."""

import asyncio
import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from pydantic import ValidationError

from trackmate.core.broadcaster import Broadcaster
from trackmate.core.eta_calculator import EtaCalculator, EtaRecord, EtaSource
from trackmate.core.registry import Connection, Role
from trackmate.core.stop_detector import StopEvent, TripStopTracker, order_stops
from trackmate.core.trips import TripRecord, TripStore
from trackmate.schemas.messages import (
    Coordinates,
    EtaEntry,
    EtaUpdateBroadcast,
    LocationBroadcast,
    LocationUpdateMessage,
    SosMessage,
)

logger = logging.getLogger(__name__)


class IngestOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    THROTTLED = "throttled"


@dataclass
class PositionSample:
    trip_id: str
    bus_id: str
    driver_id: str
    lat: float
    lng: float
    timestamp: float  # ms since epoch
    accuracy: float | None = None
    speed: float | None = None
    heading: float | None = None
    force: bool = False


@dataclass
class TripState:
    record: TripRecord
    tracker: TripStopTracker
    last_sample: PositionSample | None = None
    last_accepted: float | None = None  # monotonic seconds
    last_activity: float = 0.0  # monotonic seconds
    etas: list[EtaRecord] = field(default_factory=list)


def _wall_ms() -> float:
    return time.time() * 1000


class LocationIngest:
    """Owns the authoritative last-known position and stop state of every active trip.

    Samples for the same trip are processed one at a time under a per-trip
    lock, so the store lookups (the only awaits before fan-out) cannot
    reorder them.
    """

    def __init__(
        self,
        store: TripStore,
        broadcaster: Broadcaster,
        eta_calculator: EtaCalculator | None = None,
        min_interval_ms: int = 1000,
        arrival_radius_m: float = 50.0,
        departure_radius_m: float = 100.0,
        idle_ttl_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
        now_ms: Callable[[], float] = _wall_ms,
    ) -> None:
        if arrival_radius_m >= departure_radius_m:
            raise ValueError("arrival radius must be smaller than departure radius")
        self.store = store
        self.broadcaster = broadcaster
        self.eta_calculator = eta_calculator or EtaCalculator()
        self.min_interval_ms = min_interval_ms
        self.arrival_radius_m = arrival_radius_m
        self.departure_radius_m = departure_radius_m
        self.idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._now_ms = now_ms

        self._trips: dict[str, TripState] = {}
        self._bus_trip: dict[str, str] = {}  # bus_id -> trip_id with state loaded
        self._locks: dict[str, asyncio.Lock] = {}

    # -- location -----------------------------------------------------------

    async def handle_location(self, conn: Connection, payload: object) -> IngestOutcome:
        """Process one ``driver:location_update`` from a connection."""
        if conn.role is not Role.DRIVER or not conn.authenticated:
            logger.debug("Location from non-driver connection %s discarded", conn.id)
            return IngestOutcome.REJECTED

        try:
            msg = LocationUpdateMessage.model_validate(payload)
        except ValidationError as e:
            logger.debug("Malformed location from %s: %s", conn.id, e.errors()[:1])
            return IngestOutcome.REJECTED

        if msg.driver_id is not None and msg.driver_id != conn.user_id:
            logger.debug("Location driverId %s does not match connection user %s", msg.driver_id, conn.user_id)
            return IngestOutcome.REJECTED

        async with self._lock_for(msg.trip_id):
            state = await self._load(msg.trip_id)
            if state is None:
                logger.debug("Location for unknown or ended trip %s discarded", msg.trip_id)
                return IngestOutcome.REJECTED
            record = state.record
            if record.driver_id != conn.user_id or (msg.bus_id and msg.bus_id != record.bus_id):
                logger.debug("Driver %s does not own trip %s", conn.user_id, msg.trip_id)
                return IngestOutcome.REJECTED

            now = self._clock()
            if (
                not msg.force
                and state.last_accepted is not None
                and (now - state.last_accepted) * 1000 < self.min_interval_ms
            ):
                logger.debug("Location for trip %s throttled", msg.trip_id)
                return IngestOutcome.THROTTLED

            if not await self._still_active(record.id):
                logger.info("Location for trip %s rejected, trip is no longer active", record.id)
                await self.end_trip(record.id)
                return IngestOutcome.REJECTED

            state.last_accepted = now
            state.last_activity = now
            sample = PositionSample(
                trip_id=record.id,
                bus_id=record.bus_id,
                driver_id=record.driver_id,
                lat=msg.lat,
                lng=msg.lng,
                timestamp=msg.timestamp if msg.timestamp is not None else self._now_ms(),
                accuracy=msg.accuracy,
                speed=msg.speed,
                heading=msg.heading,
                force=msg.force,
            )
            await self._accept(state, sample, conn)
        return IngestOutcome.ACCEPTED

    async def _accept(self, state: TripState, sample: PositionSample, conn: Connection) -> None:
        tracker = state.tracker
        previous_index = tracker.current_index
        state.last_sample = sample

        events = tracker.update(sample.lat, sample.lng, sample.timestamp, force=sample.force)

        computed_at = self._now_ms()
        state.etas = self.eta_calculator.calculate(
            state.record.route.id,
            sample.lat, sample.lng, sample.speed,
            tracker.remaining(), tracker.current_index, computed_at,
        )

        location = LocationBroadcast(
            trip_id=sample.trip_id,
            bus_id=sample.bus_id,
            lat=sample.lat,
            lng=sample.lng,
            speed=sample.speed,
            heading=sample.heading,
            accuracy=sample.accuracy,
            timestamp=sample.timestamp,
        )
        await self.broadcaster.publish_update(
            sample.trip_id, location, events, self._eta_message(state, computed_at), publisher=conn,
        )

        if events or tracker.current_index != previous_index:
            await self._persist(state, events, sample)

    @staticmethod
    def _eta_message(state: TripState, computed_at: float) -> EtaUpdateBroadcast:
        sources = {e.source for e in state.etas}
        source = EtaSource.FALLBACK if EtaSource.FALLBACK in sources else EtaSource.SERVER
        return EtaUpdateBroadcast(
            trip_id=state.record.id,
            etas_map={str(e.stop.seq): e.eta_ms for e in state.etas},
            etas=[
                EtaEntry(stop_id=e.stop.stop_id, stop_index=e.stop_index, eta_ms=e.eta_ms)
                for e in state.etas
            ],
            source=source.value,
            computed_at=computed_at,
        )

    async def _persist(self, state: TripState, events: list[StopEvent], sample: PositionSample) -> None:
        try:
            for ev in events:
                await self.store.record_stop_event(ev, sample.lat, sample.lng)
            await self.store.set_current_stop(state.record.id, state.tracker.current_index)
        except Exception:
            logger.exception("Failed to persist stop events for trip %s", state.record.id)

    # -- sos ----------------------------------------------------------------

    async def handle_sos(self, conn: Connection, payload: object) -> bool:
        """Relay a driver's SOS immediately; no throttling applies."""
        if conn.role is not Role.DRIVER or not conn.authenticated:
            return False
        try:
            msg = SosMessage.model_validate(payload)
        except ValidationError:
            logger.debug("Malformed SOS from %s", conn.id)
            return False

        state = await self._load(msg.trip_id)
        if state is None or state.record.driver_id != conn.user_id:
            logger.info("SOS from %s for trip %s not owned by sender, ignored", conn.user_id, msg.trip_id)
            return False
        if not await self._still_active(msg.trip_id):
            logger.info("SOS for trip %s ignored, trip is no longer active", msg.trip_id)
            await self.end_trip(msg.trip_id)
            return False

        if msg.location is None and state.last_sample is not None:
            msg.location = Coordinates(lat=state.last_sample.lat, lng=state.last_sample.lng)
        await self.broadcaster.publish_sos(msg)
        return True

    # -- trip state ---------------------------------------------------------

    async def _still_active(self, trip_id: str) -> bool:
        """Re-read trip status; the trip may have been ended outside the relay."""
        try:
            record = await self.store.get_trip(trip_id)
        except Exception:
            logger.exception("Failed to refresh trip %s", trip_id)
            return True
        return record is not None and record.active

    async def _load(self, trip_id: str) -> TripState | None:
        state = self._trips.get(trip_id)
        if state is not None:
            return state

        record = await self.store.get_trip(trip_id)
        if record is None or not record.active:
            return None
        # Another caller may have loaded it while we were waiting on the store
        state = self._trips.get(trip_id)
        if state is not None:
            return state

        # One authoritative publisher per bus
        other = self._bus_trip.get(record.bus_id)
        if other is not None and other != trip_id:
            logger.info("Bus %s moved from trip %s to %s", record.bus_id, other, trip_id)
            await self.end_trip(other)

        stops = order_stops(list(record.route.stops))
        tracker = TripStopTracker(
            trip_id=record.id,
            stops=stops,
            arrival_radius_m=self.arrival_radius_m,
            departure_radius_m=self.departure_radius_m,
        )
        if record.current_stop_index >= 0 and stops:
            tracker.restore(record.current_stop_index)

        if not self.eta_calculator.is_loaded(record.route.id):
            self.eta_calculator.load_route(record.route.id, stops, record.route.geometry)

        state = TripState(record=record, tracker=tracker, last_activity=self._clock())
        self._trips[trip_id] = state
        self._bus_trip[record.bus_id] = trip_id
        logger.info("Trip %s loaded (bus %s, %d stops)", trip_id, record.bus_id, len(stops))
        return state

    async def end_trip(self, trip_id: str) -> None:
        """Drop in-memory state for a trip that ended or went idle."""
        state = self._trips.pop(trip_id, None)
        lock = self._locks.get(trip_id)
        if lock is not None and not lock.locked():
            del self._locks[trip_id]
        if state is None:
            return
        if self._bus_trip.get(state.record.bus_id) == trip_id:
            del self._bus_trip[state.record.bus_id]
        await self.broadcaster.forget(trip_id)
        logger.info("Trip %s state dropped", trip_id)

    async def sweep(self) -> list[str]:
        """Drop state of trips that ended in the store or have been idle too long."""
        now = self._clock()
        dropped = []
        for trip_id, state in list(self._trips.items()):
            idle = now - state.last_activity > self.idle_ttl_seconds
            try:
                record = await self.store.get_trip(trip_id)
            except Exception:
                logger.exception("Failed to refresh trip %s", trip_id)
                continue
            if record is None or not record.active or idle:
                await self.end_trip(trip_id)
                dropped.append(trip_id)
        if dropped:
            logger.info("Swept %d trips: %s", len(dropped), dropped)
        return dropped

    def _lock_for(self, trip_id: str) -> asyncio.Lock:
        lock = self._locks.get(trip_id)
        if lock is None:
            lock = self._locks[trip_id] = asyncio.Lock()
        return lock

    # -- read side ----------------------------------------------------------

    def live_trips(self) -> list[dict]:
        return [self.snapshot(trip_id) for trip_id in self._trips]

    def snapshot(self, trip_id: str) -> dict | None:
        state = self._trips.get(trip_id)
        if state is None:
            return None
        tracker = state.tracker
        sample = state.last_sample
        return {
            "tripId": state.record.id,
            "busId": state.record.bus_id,
            "routeId": state.record.route.id,
            "currentStopIndex": tracker.current_index,
            "position": None if sample is None else {
                "lat": sample.lat,
                "lng": sample.lng,
                "speed": sample.speed,
                "heading": sample.heading,
                "timestamp": sample.timestamp,
            },
            "stops": [
                {
                    "index": i,
                    "stopId": stop.stop_id,
                    "name": stop.name,
                    "seq": stop.seq,
                    "status": tracker.states[i].status.value,
                    "arrivedAt": tracker.states[i].arrived_at,
                    "departedAt": tracker.states[i].departed_at,
                }
                for i, stop in enumerate(tracker.stops)
            ],
            "etasMap": {str(e.stop.seq): e.eta_ms for e in state.etas},
        }

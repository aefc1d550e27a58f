"""Per-trip stop arrival/departure detection.

Each active trip owns a ``TripStopTracker`` holding the status of every stop on
its route and a single authoritative ``current_index`` (the last stop the bus
was confirmed at). Arrival uses a smaller radius than departure so that GPS
jitter around the boundary cannot produce arrived/left flapping.
"""

import enum
import logging
from dataclasses import dataclass, field

from trackmate.core.geo import haversine_m

logger = logging.getLogger(__name__)


class StopStatus(str, enum.Enum):
    NOT_REACHED = "not_reached"
    ARRIVED = "arrived"
    DEPARTED = "departed"


class EventKind(str, enum.Enum):
    ARRIVED = "arrived"
    LEFT = "left"


@dataclass
class StopOnRoute:
    stop_id: str
    name: str
    lat: float
    lon: float
    seq: int
    cumulative_distance_m: float = 0.0  # filled by order_stops


@dataclass
class StopState:
    status: StopStatus = StopStatus.NOT_REACHED
    arrived_at: float | None = None
    departed_at: float | None = None


@dataclass
class StopEvent:
    kind: EventKind
    trip_id: str
    stop_index: int
    stop_name: str
    timestamp: float  # ms since epoch


def order_stops(stops: list[StopOnRoute]) -> list[StopOnRoute]:
    """Sort stops by sequence and fill cumulative great-circle distances."""
    ordered = sorted(stops, key=lambda s: s.seq)
    cum = 0.0
    for i, s in enumerate(ordered):
        if i > 0:
            prev = ordered[i - 1]
            cum += haversine_m(prev.lat, prev.lon, s.lat, s.lon)
        s.cumulative_distance_m = cum
    return ordered


@dataclass
class TripStopTracker:
    """Stop state machine for one trip."""

    trip_id: str
    stops: list[StopOnRoute]
    arrival_radius_m: float = 50.0
    departure_radius_m: float = 100.0
    current_index: int = -1
    states: list[StopState] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.arrival_radius_m >= self.departure_radius_m:
            raise ValueError("arrival radius must be smaller than departure radius")
        if not self.states:
            self.states = [StopState() for _ in self.stops]

    def update(
        self, lat: float, lon: float, timestamp: float, force: bool = False,
    ) -> list[StopEvent]:
        """Feed one accepted position; return arrived events then left events."""
        if not self.stops:
            return []
        if force:
            return self._teleport(lat, lon, timestamp)

        arrived: list[StopEvent] = []
        left: list[StopEvent] = []

        nxt = self.current_index + 1
        if nxt < len(self.stops) and self.states[nxt].status is StopStatus.NOT_REACHED:
            stop = self.stops[nxt]
            if haversine_m(lat, lon, stop.lat, stop.lon) <= self.arrival_radius_m:
                arrived.append(self._arrive(nxt, timestamp))
                # Reaching the next stop means every earlier stop is behind us.
                for i in range(nxt):
                    if self.states[i].status is StopStatus.ARRIVED:
                        left.append(self._depart(i, timestamp))

        for i in range(self.current_index + 1):
            if self.states[i].status is not StopStatus.ARRIVED:
                continue
            stop = self.stops[i]
            if haversine_m(lat, lon, stop.lat, stop.lon) > self.departure_radius_m:
                left.append(self._depart(i, timestamp))

        return arrived + left

    def restore(self, current_index: int) -> None:
        """Rebuild state from a persisted current index (bus still at that stop)."""
        current_index = min(current_index, len(self.stops) - 1)
        self.states = [StopState() for _ in self.stops]
        for i in range(max(current_index, 0)):
            self.states[i].status = StopStatus.DEPARTED
        if current_index >= 0:
            self.states[current_index].status = StopStatus.ARRIVED
        self.current_index = current_index

    def remaining(self) -> list[tuple[int, StopOnRoute]]:
        """Stops still not reached, as (index, stop) in route order."""
        return [
            (i, s) for i, s in enumerate(self.stops)
            if self.states[i].status is StopStatus.NOT_REACHED
        ]

    def status_of(self, index: int) -> StopStatus:
        return self.states[index].status

    # ------------------------------------------------------------------

    def _arrive(self, index: int, timestamp: float) -> StopEvent:
        state = self.states[index]
        state.status = StopStatus.ARRIVED
        state.arrived_at = timestamp
        self.current_index = index
        stop = self.stops[index]
        logger.debug("Trip %s arrived at stop %d (%s)", self.trip_id, index, stop.name)
        return StopEvent(EventKind.ARRIVED, self.trip_id, index, stop.name, timestamp)

    def _depart(self, index: int, timestamp: float) -> StopEvent:
        state = self.states[index]
        state.status = StopStatus.DEPARTED
        state.departed_at = timestamp
        stop = self.stops[index]
        logger.debug("Trip %s left stop %d (%s)", self.trip_id, index, stop.name)
        return StopEvent(EventKind.LEFT, self.trip_id, index, stop.name, timestamp)

    def _nearest(self, lat: float, lon: float) -> tuple[int, float]:
        best_idx = 0
        best_dist = float("inf")
        for i, s in enumerate(self.stops):
            d = haversine_m(lat, lon, s.lat, s.lon)
            if d < best_dist:
                best_dist = d
                best_idx = i
        return best_idx, best_dist

    def _teleport(self, lat: float, lon: float, timestamp: float) -> list[StopEvent]:
        """Manual repositioning: jump the state machine to the nearest stop."""
        target, dist = self._nearest(lat, lon)
        at_stop = dist <= self.arrival_radius_m

        arrived: list[StopEvent] = []
        left: list[StopEvent] = []

        for i in range(target + 1, len(self.stops)):
            self.states[i] = StopState()

        if at_stop:
            if self.states[target].status is not StopStatus.ARRIVED:
                self.states[target] = StopState()
                arrived.append(self._arrive(target, timestamp))
            self.current_index = target
        else:
            self.states[target] = StopState()
            self.current_index = target - 1

        for i in range(target):
            state = self.states[i]
            if state.status is StopStatus.ARRIVED:
                left.append(self._depart(i, timestamp))
            elif state.status is StopStatus.NOT_REACHED:
                state.status = StopStatus.DEPARTED
                state.departed_at = timestamp

        logger.info(
            "Trip %s repositioned to stop index %d (at_stop=%s)",
            self.trip_id, self.current_index, at_stop,
        )
        return arrived + left

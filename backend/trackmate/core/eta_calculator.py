"""Calculate ETA to the remaining stops of a trip."""

import enum
import logging
from dataclasses import dataclass

from trackmate.core.geo import haversine_m
from trackmate.core.route_matcher import RouteMatcher
from trackmate.core.stop_detector import StopOnRoute

logger = logging.getLogger(__name__)

# Speed assumed when the reported one is missing or implausible (m/s)
DEFAULT_SPEED_MPS = 5.0
MIN_PLAUSIBLE_SPEED_MPS = 0.5
MAX_PLAUSIBLE_SPEED_MPS = 40.0


class EtaSource(str, enum.Enum):
    SERVER = "server"
    FALLBACK = "fallback"


@dataclass
class EtaRecord:
    stop_index: int
    stop: StopOnRoute
    eta_ms: int
    source: EtaSource
    computed_at: float  # ms since epoch


def effective_speed(
    speed: float | None,
    default_mps: float = DEFAULT_SPEED_MPS,
    min_mps: float = MIN_PLAUSIBLE_SPEED_MPS,
    max_mps: float = MAX_PLAUSIBLE_SPEED_MPS,
) -> float:
    """Reported speed if plausible, otherwise the default."""
    if speed is None or speed != speed or not (min_mps <= speed <= max_mps):
        return default_mps
    return speed


def fallback_eta_ms(
    lat: float, lon: float,
    stop_lat: float, stop_lon: float,
    speed: float | None = None,
    default_mps: float = DEFAULT_SPEED_MPS,
) -> int:
    """Straight-line heuristic: great-circle distance over speed, in ms."""
    dist = haversine_m(lat, lon, stop_lat, stop_lon)
    return int(dist / effective_speed(speed, default_mps) * 1000)


class EtaCalculator:
    """Distance-along-route ETA with a straight-line fallback."""

    def __init__(
        self,
        matcher: RouteMatcher | None = None,
        average_speed_mps: float = DEFAULT_SPEED_MPS,
        min_plausible_speed_mps: float = MIN_PLAUSIBLE_SPEED_MPS,
        max_plausible_speed_mps: float = MAX_PLAUSIBLE_SPEED_MPS,
    ) -> None:
        self.matcher = matcher or RouteMatcher()
        self.average_speed_mps = average_speed_mps
        self.min_plausible_speed_mps = min_plausible_speed_mps
        self.max_plausible_speed_mps = max_plausible_speed_mps
        # route_id -> distance along route of each stop, in stop order
        self._stop_along: dict[str, list[float]] = {}

    def load_route(
        self,
        route_id: str,
        stops: list[StopOnRoute],
        geometry: list[list[float]] | None = None,
    ) -> None:
        """Load route geometry (or stop-to-stop lines) and precompute stop offsets."""
        coords = geometry if geometry and len(geometry) >= 2 else [[s.lat, s.lon] for s in stops]
        if not self.matcher.load_route(route_id, coords):
            self._stop_along.pop(route_id, None)
            logger.warning("Route %s: no usable geometry, ETA will use fallback", route_id)
            return

        along: list[float] = []
        prev = 0.0
        for s in stops:
            # Project each stop after the previous one so loops stay monotonic
            d = self.matcher.distance_along(route_id, s.lat, s.lon, start_m=prev)
            prev = max(prev, d or 0.0)
            along.append(prev)
        self._stop_along[route_id] = along

    def is_loaded(self, route_id: str) -> bool:
        return route_id in self._stop_along

    def calculate(
        self,
        route_id: str,
        lat: float,
        lon: float,
        speed: float | None,
        remaining: list[tuple[int, StopOnRoute]],
        current_index: int,
        now_ms: float,
    ) -> list[EtaRecord]:
        """ETA in ms for each remaining (index, stop) pair."""
        if not remaining:
            return []

        speed_mps = effective_speed(
            speed, self.average_speed_mps,
            self.min_plausible_speed_mps, self.max_plausible_speed_mps,
        )

        along = self._stop_along.get(route_id)
        match = None
        if along is not None:
            start = along[current_index] if 0 <= current_index < len(along) else 0.0
            match = self.matcher.match(route_id, lat, lon, start_m=start)

        if match is None:
            return self._straight_line(lat, lon, speed_mps, remaining, now_ms)

        results = []
        for index, stop in remaining:
            remaining_m = max(0.0, along[index] - match.distance_along_m)
            results.append(EtaRecord(
                stop_index=index,
                stop=stop,
                eta_ms=int(remaining_m / speed_mps * 1000),
                source=EtaSource.SERVER,
                computed_at=now_ms,
            ))
        return results

    @staticmethod
    def _straight_line(
        lat: float, lon: float, speed_mps: float,
        remaining: list[tuple[int, StopOnRoute]], now_ms: float,
    ) -> list[EtaRecord]:
        """Vehicle -> first remaining stop, then cumulative inter-stop distances."""
        first = remaining[0][1]
        dist_to_first = haversine_m(lat, lon, first.lat, first.lon)
        first_cum = first.cumulative_distance_m

        results = []
        for index, stop in remaining:
            remaining_m = max(0.0, dist_to_first + (stop.cumulative_distance_m - first_cum))
            results.append(EtaRecord(
                stop_index=index,
                stop=stop,
                eta_ms=int(remaining_m / speed_mps * 1000),
                source=EtaSource.FALLBACK,
                computed_at=now_ms,
            ))
        return results

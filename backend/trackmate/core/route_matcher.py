"""Snap GPS positions to route polylines using Shapely linear referencing."""

import logging
from dataclasses import dataclass

from shapely.geometry import LineString, Point
from shapely.ops import substring

from trackmate.core.geo import to_local_xy

logger = logging.getLogger(__name__)

# Max distance (meters) from route to consider a valid snap
MAX_SNAP_DISTANCE_M = 300.0


@dataclass
class MatchResult:
    distance_along_m: float  # meters from route start
    offset_m: float  # perpendicular distance from route in meters


class RouteMatcher:
    """Matches GPS coordinates to pre-loaded route geometries.

    Lines are stored in a local equirectangular plane (meters) centered on
    each route's mean latitude, so projections come back in meters directly.
    """

    def __init__(self, max_snap_distance_m: float = MAX_SNAP_DISTANCE_M) -> None:
        self.max_snap_distance_m = max_snap_distance_m
        # route_id -> (LineString in local meters, reference latitude)
        self._routes: dict[str, tuple[LineString, float]] = {}

    def load_route(self, route_id: str, coords: list[list[float]]) -> bool:
        """Load route geometry. coords = [[lat, lon], ...]"""
        if len(coords) < 2:
            return False
        ref_lat = sum(c[0] for c in coords) / len(coords)
        line = LineString([to_local_xy(c[0], c[1], ref_lat) for c in coords])
        if line.length <= 0:
            return False
        self._routes[route_id] = (line, ref_lat)
        logger.debug("Route %s: loaded geometry (%d pts, %.0fm)", route_id, len(coords), line.length)
        return True

    def match(
        self, route_id: str, lat: float, lon: float, start_m: float = 0.0,
    ) -> MatchResult | None:
        """Snap a point to a route; None if unknown route or too far off it.

        ``start_m`` restricts the projection to the part of the line after
        that distance, which keeps loop routes from snapping back to the start.
        """
        if route_id not in self._routes:
            return None
        result = self._project(route_id, lat, lon, start_m)
        if result.offset_m > self.max_snap_distance_m:
            return None
        return result

    def distance_along(
        self, route_id: str, lat: float, lon: float, start_m: float = 0.0,
    ) -> float | None:
        """Distance along the route of the projected point, ignoring the snap limit."""
        if route_id not in self._routes:
            return None
        return self._project(route_id, lat, lon, start_m).distance_along_m

    def _project(self, route_id: str, lat: float, lon: float, start_m: float) -> MatchResult:
        line, ref_lat = self._routes[route_id]
        point = Point(*to_local_xy(lat, lon, ref_lat))
        if start_m <= 0:
            return MatchResult(distance_along_m=line.project(point), offset_m=line.distance(point))

        start_m = min(start_m, line.length)
        tail = substring(line, start_m, line.length)
        if tail.length <= 0:  # degenerate: substring collapsed to a point
            return MatchResult(distance_along_m=start_m, offset_m=tail.distance(point))
        return MatchResult(
            distance_along_m=start_m + tail.project(point),
            offset_m=tail.distance(point),
        )

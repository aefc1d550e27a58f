"""Student-side ETA for a single stop, with a straight-line fallback."""

import time
from collections.abc import Callable
from dataclasses import dataclass

from trackmate.core.eta_calculator import DEFAULT_SPEED_MPS, EtaSource, fallback_eta_ms

FRESHNESS_SECONDS = 10.0


@dataclass
class EtaEstimate:
    eta_ms: int
    source: EtaSource
    updated_at: float  # clock seconds


class EtaView:
    """Tracks the ETA to one stop from ``trip:*`` messages.

    Server estimates win while fresh; once older than the freshness window
    the estimate is recomputed from the last bus position instead.
    """

    def __init__(
        self,
        stop_seq: int,
        stop_lat: float,
        stop_lng: float,
        stop_id: str | None = None,
        stop_index: int | None = None,
        freshness_seconds: float = FRESHNESS_SECONDS,
        default_speed_mps: float = DEFAULT_SPEED_MPS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stop_seq = stop_seq
        self.stop_lat = stop_lat
        self.stop_lng = stop_lng
        self.stop_id = stop_id
        self.stop_index = stop_seq if stop_index is None else stop_index
        self.freshness_seconds = freshness_seconds
        self.default_speed_mps = default_speed_mps
        self._clock = clock
        self._server: EtaEstimate | None = None
        self._bus: tuple[float, float] | None = None
        self._speed: float | None = None
        self.departed = False

    def on_eta_update(self, data: dict) -> bool:
        """Take this stop's value from an ETA update; False if it is absent."""
        value = None
        etas_map = data.get("etasMap") or {}
        if isinstance(etas_map.get(str(self.stop_seq)), (int, float)):
            value = etas_map[str(self.stop_seq)]
        elif self.stop_id is not None:
            for entry in data.get("etas") or []:
                if str(entry.get("stopId")) == str(self.stop_id):
                    value = entry.get("etaMs")
                    break
        if not isinstance(value, (int, float)):
            return False
        self._server = EtaEstimate(max(0, int(value)), EtaSource.SERVER, self._clock())
        return True

    def on_location_update(self, data: dict) -> None:
        lat, lng = data.get("lat"), data.get("lng")
        if isinstance(lat, (int, float)) and isinstance(lng, (int, float)):
            self._bus = (lat, lng)
        speed = data.get("speed")
        self._speed = speed if isinstance(speed, (int, float)) else None

    def on_stop_left(self, data: dict) -> None:
        if data.get("stopIndex") == self.stop_index:
            self.departed = True

    def current(self) -> EtaEstimate | None:
        if self.departed:
            return None
        now = self._clock()
        if self._server is not None and now - self._server.updated_at < self.freshness_seconds:
            return self._server
        if self._bus is not None:
            eta = fallback_eta_ms(
                self._bus[0], self._bus[1], self.stop_lat, self.stop_lng,
                self._speed, self.default_speed_mps,
            )
            return EtaEstimate(eta, EtaSource.FALLBACK, now)
        return self._server

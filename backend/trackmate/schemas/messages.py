"""Real-time channel message names and payload models."""

import orjson
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Inbound
AUTH_TOKEN = "auth:token"
DRIVER_LOCATION_UPDATE = "driver:location_update"
DRIVER_SOS = "driver:sos"
STUDENT_SUBSCRIBE = "student:subscribe"
STUDENT_UNSUBSCRIBE = "student:unsubscribe"

# Outbound
AUTH_READY = "auth:ready"
TRIP_LOCATION_UPDATE = "trip:location_update"
TRIP_STOP_ARRIVED = "trip:stop_arrived"
TRIP_STOP_LEFT = "trip:stop_left"
TRIP_ETA_UPDATE = "trip:eta_update"
TRIP_SOS = "trip:sos"
LIVE_VISITORS = "stats:live_visitors"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class AuthMessage(WireModel):
    token: str


class LocationUpdateMessage(WireModel):
    driver_id: str | None = None
    trip_id: str = Field(min_length=1)
    bus_id: str | None = None
    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(ge=-180, le=180, allow_inf_nan=False)
    accuracy: float | None = None
    speed: float | None = None
    heading: float | None = None
    timestamp: float | None = None  # ms since epoch, client clock
    force: bool = False


class Coordinates(WireModel):
    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(ge=-180, le=180, allow_inf_nan=False)


class SosMessage(WireModel):
    trip_id: str = Field(min_length=1)
    location: Coordinates | None = None
    message: str = "Bus Breakdown"


class SubscribeMessage(WireModel):
    trip_id: str = Field(min_length=1)


class LocationBroadcast(WireModel):
    trip_id: str
    bus_id: str
    lat: float
    lng: float
    speed: float | None = None
    heading: float | None = None
    accuracy: float | None = None
    timestamp: float


class StopEventBroadcast(WireModel):
    trip_id: str
    stop_index: int
    stop_name: str
    timestamp: float


class EtaEntry(WireModel):
    stop_id: str
    stop_index: int
    eta_ms: int


class EtaUpdateBroadcast(WireModel):
    trip_id: str
    etas_map: dict[str, int]  # stop seq -> eta ms
    etas: list[EtaEntry] = []
    source: str = "server"
    computed_at: float


def encode(event: str, data: object) -> bytes:
    """Serialize one outbound message envelope."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, mode="json")
    return orjson.dumps({"event": event, "data": data})


def decode(raw: bytes | str) -> tuple[str | None, object]:
    """Parse an inbound envelope; raises orjson.JSONDecodeError on garbage."""
    message = orjson.loads(raw)
    if not isinstance(message, dict):
        return None, None
    return message.get("event"), message.get("data")

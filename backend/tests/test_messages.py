"""Tests for the wire envelope and payload models."""

import orjson
import pytest
from pydantic import ValidationError

from factories import Relay
from trackmate.core.scheduler import create_scheduler
from trackmate.schemas.messages import (
    TRIP_STOP_ARRIVED,
    LocationUpdateMessage,
    SosMessage,
    StopEventBroadcast,
    decode,
    encode,
)


def test_encode_model_uses_camel_case():
    raw = encode(TRIP_STOP_ARRIVED, StopEventBroadcast(trip_id="t1", stop_index=2, stop_name="Library", timestamp=5))
    assert orjson.loads(raw) == {
        "event": TRIP_STOP_ARRIVED,
        "data": {"tripId": "t1", "stopIndex": 2, "stopName": "Library", "timestamp": 5.0},
    }


def test_decode_envelope():
    assert decode(b'{"event":"student:subscribe","data":{"tripId":"t1"}}') == (
        "student:subscribe", {"tripId": "t1"},
    )
    assert decode("[1, 2]") == (None, None)
    with pytest.raises(orjson.JSONDecodeError):
        decode(b"{oops")


def test_location_accepts_snake_and_camel():
    a = LocationUpdateMessage.model_validate({"tripId": "t1", "lat": 1, "lng": 2})
    b = LocationUpdateMessage.model_validate({"trip_id": "t1", "lat": 1, "lng": 2})
    assert a == b
    assert a.force is False


@pytest.mark.parametrize("payload", [
    {"tripId": "", "lat": 1, "lng": 2},
    {"tripId": "t1", "lat": 91, "lng": 2},
    {"tripId": "t1", "lat": 1, "lng": -181},
    {"tripId": "t1", "lat": float("inf"), "lng": 2},
    {"tripId": "t1", "lng": 2},
])
def test_location_validation(payload):
    with pytest.raises(ValidationError):
        LocationUpdateMessage.model_validate(payload)


def test_sos_default_message():
    assert SosMessage(trip_id="t1").message == "Bus Breakdown"


def test_sweep_job_registered():
    scheduler = create_scheduler(Relay().ingest)
    job = scheduler.get_job("sweep_idle_trips")
    assert job is not None
    assert job.trigger.interval.total_seconds() == 60

"""Tests for DriverClient: offline buffering, ordered drain, bounded retries."""

import asyncio

import pytest

from trackmate.client.driver_client import DispatchError, DriverClient
from trackmate.client.offline_buffer import OfflineBuffer
from trackmate.client.transport import WebSocketTransport
from trackmate.schemas.messages import AUTH_READY, DRIVER_LOCATION_UPDATE, DRIVER_SOS


class FakeTransport:
    """Records what it accepted; fails the next ``failures`` sends."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.attempts = 0
        self.sent: list[tuple[str, dict]] = []
        self.gate: asyncio.Event | None = None

    async def send(self, event: str, data: dict) -> None:
        self.attempts += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise DispatchError("socket closed")
        self.sent.append((event, data))


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def sample(n: int) -> dict:
    return {"tripId": "t1", "lat": 16.7, "lng": 81.1, "timestamp": n}


def make_client(transport, **kwargs):
    sleep = SleepRecorder()
    client = DriverClient(transport, OfflineBuffer(capacity=50), sleep=sleep, **kwargs)
    return client, sleep


def sent_timestamps(transport):
    return [data["timestamp"] for _, data in transport.sent]


def test_send_while_connected_goes_straight_out():
    async def scenario():
        transport = FakeTransport()
        client, _ = make_client(transport)
        client.connected = True
        assert await client.send_location(sample(1))
        assert transport.sent == [(DRIVER_LOCATION_UPDATE, sample(1))]
        assert client.pending == 0
        assert not client.flushing

    asyncio.run(scenario())


def test_offline_samples_drain_in_order_on_reconnect():
    async def scenario():
        transport = FakeTransport()
        client, sleep = make_client(transport)

        for n in (1, 2, 3):
            assert not await client.send_location(sample(n))
        assert client.pending == 3
        assert transport.attempts == 0

        client.on_connect()
        await client.wait_idle()
        assert sent_timestamps(transport) == [1, 2, 3]
        assert client.pending == 0
        # Paced by the drain interval after the first send
        assert sleep.delays == [1.0, 1.0]

    asyncio.run(scenario())


def test_new_samples_queue_behind_drain():
    async def scenario():
        transport = FakeTransport()
        client, _ = make_client(transport)
        for n in (1, 2, 3):
            await client.send_location(sample(n))

        client.on_connect()
        assert not await client.send_location(sample(4))
        await client.wait_idle()
        assert sent_timestamps(transport) == [1, 2, 3, 4]

    asyncio.run(scenario())


def test_failed_send_retries_with_backoff_then_stays_buffered():
    async def scenario():
        transport = FakeTransport(failures=100)
        client, sleep = make_client(transport)
        client.connected = True

        assert not await client.send_location(sample(1))
        await client.wait_idle()

        # One direct attempt plus three retries
        assert transport.attempts == 4
        assert sleep.delays == [1.0, 2.0, 2.0]
        assert client.pending == 1
        assert transport.sent == []

    asyncio.run(scenario())


def test_transient_failure_delivers_exactly_once():
    async def scenario():
        transport = FakeTransport(failures=1)
        client, sleep = make_client(transport)
        client.connected = True

        await client.send_location(sample(1))
        await client.wait_idle()
        assert sent_timestamps(transport) == [1]
        assert client.pending == 0
        assert sleep.delays == [1.0]

    asyncio.run(scenario())


def test_next_sample_restarts_retries_after_giving_up():
    async def scenario():
        transport = FakeTransport(failures=4)
        client, _ = make_client(transport)
        client.connected = True
        await client.send_location(sample(1))
        await client.wait_idle()
        assert client.pending == 1

        await client.send_location(sample(2))
        await client.wait_idle()
        assert sent_timestamps(transport) == [1, 2]

    asyncio.run(scenario())


def test_rescheduling_cancels_previous_task():
    async def scenario():
        transport = FakeTransport()
        transport.gate = asyncio.Event()
        client, _ = make_client(transport)
        await client.send_location(sample(1))

        client.on_connect()
        first = client._task
        await asyncio.sleep(0)  # first task now blocked inside send

        client._schedule(retrying=False)
        second = client._task
        assert first is not second
        await asyncio.sleep(0)
        assert first.cancelled()

        transport.gate.set()
        await client.wait_idle()
        assert sent_timestamps(transport) == [1]
        assert client.pending == 0

    asyncio.run(scenario())


def test_repeated_connect_ack_does_not_resend():
    async def scenario():
        transport = FakeTransport()
        transport.gate = asyncio.Event()
        client, _ = make_client(transport)
        for n in (1, 2):
            await client.send_location(sample(n))

        client.on_connect()
        running = client._task
        await asyncio.sleep(0)  # blocked sending sample 1

        client.on_connect()
        assert client._task is running

        transport.gate.set()
        await client.wait_idle()
        assert sent_timestamps(transport) == [1, 2]
        assert transport.attempts == 2

    asyncio.run(scenario())


def test_disconnect_stops_draining_and_keeps_samples():
    async def scenario():
        transport = FakeTransport()
        transport.gate = asyncio.Event()
        client, _ = make_client(transport)
        for n in (1, 2):
            await client.send_location(sample(n))
        client.on_connect()
        await asyncio.sleep(0)

        client.on_disconnect()
        assert not client.connected
        assert not client.flushing
        assert client.pending == 2

        transport.gate.set()
        client.on_connect()
        await client.wait_idle()
        assert sent_timestamps(transport) == [1, 2]

    asyncio.run(scenario())


def test_sos_bypasses_buffer():
    async def scenario():
        transport = FakeTransport()
        client, _ = make_client(transport)
        await client.send_location(sample(1))

        assert await client.send_sos("t1", "Flat tyre", {"lat": 16.7, "lng": 81.1})
        assert transport.sent == [(DRIVER_SOS, {
            "tripId": "t1", "location": {"lat": 16.7, "lng": 81.1}, "message": "Flat tyre",
        })]
        assert client.pending == 1

        transport.failures = 1
        assert not await client.send_sos("t1", "Bus Breakdown")

    asyncio.run(scenario())


def test_transport_reports_connect_only_after_auth_ready():
    async def scenario():
        events = []
        transport = WebSocketTransport("ws://relay", lambda: "tok", on_event=lambda e, d: events.append(e))
        client = DriverClient(transport, OfflineBuffer())
        transport.bind(client)

        transport._handle(b'{"event":"stats:live_visitors","data":3}')
        assert not client.connected
        transport._handle(b"garbage")
        transport._handle(('{"event":"%s","data":{}}' % AUTH_READY).encode())
        assert client.connected
        assert events == ["stats:live_visitors", AUTH_READY]

    asyncio.run(scenario())


def test_transport_send_without_socket_raises():
    async def scenario():
        transport = WebSocketTransport("ws://relay", lambda: None)
        with pytest.raises(DispatchError):
            await transport.send(DRIVER_LOCATION_UPDATE, sample(1))

    asyncio.run(scenario())

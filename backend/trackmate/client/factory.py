"""Assemble the driver client and student ETA view from settings."""

from collections.abc import Callable

from trackmate.client.driver_client import DriverClient
from trackmate.client.eta_view import EtaView
from trackmate.client.offline_buffer import BufferPolicy, OfflineBuffer
from trackmate.client.transport import WebSocketTransport
from trackmate.config import settings


def build_driver_client(
    url: str,
    token_provider: Callable[[], str | None],
    on_event: Callable[[str, object], None] | None = None,
) -> tuple[DriverClient, WebSocketTransport]:
    """Return a bound (client, transport) pair; run ``transport.run()`` as a task."""
    transport = WebSocketTransport(url, token_provider, on_event=on_event)
    buffer = OfflineBuffer(
        capacity=settings.driver_buffer_capacity,
        policy=BufferPolicy(settings.driver_buffer_policy),
        path=settings.driver_buffer_path,
    )
    client = DriverClient(
        transport,
        buffer,
        max_retries=settings.driver_max_retries,
        retry_base_seconds=settings.driver_retry_base_seconds,
        retry_max_seconds=settings.driver_retry_max_seconds,
        drain_interval_seconds=settings.driver_drain_interval_seconds,
    )
    transport.bind(client)
    return client, transport


def build_eta_view(
    stop_seq: int,
    stop_lat: float,
    stop_lng: float,
    stop_id: str | None = None,
    stop_index: int | None = None,
) -> EtaView:
    return EtaView(
        stop_seq, stop_lat, stop_lng,
        stop_id=stop_id,
        stop_index=stop_index,
        freshness_seconds=settings.eta_freshness_seconds,
        default_speed_mps=settings.eta_average_speed_mps,
    )

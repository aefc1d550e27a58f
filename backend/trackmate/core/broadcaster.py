"""Fan-out of trip updates to subscribed connections, mirrored to Redis."""

import logging

import orjson
import redis.asyncio as aioredis

from trackmate.config import settings
from trackmate.core.registry import Connection, ConnectionRegistry
from trackmate.core.stop_detector import EventKind, StopEvent
from trackmate.schemas.messages import (
    LIVE_VISITORS,
    TRIP_ETA_UPDATE,
    TRIP_LOCATION_UPDATE,
    TRIP_SOS,
    TRIP_STOP_ARRIVED,
    TRIP_STOP_LEFT,
    EtaUpdateBroadcast,
    LocationBroadcast,
    SosMessage,
    StopEventBroadcast,
)

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "trackmate:trip:"
STATE_KEY = "trackmate:trip:{trip_id}:state"


class Broadcaster:
    """Delivers trip events to subscribers and keeps the latest trip snapshot.

    Fan-out to connections is synchronous (outbox ``put_nowait``), so every
    message derived from one position update lands in each subscriber's
    outbox contiguously and in call order. Redis is only a mirror for other
    processes; failures there are logged and never block delivery.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        self._redis: aioredis.Redis | None = None
        # trip_id -> {"location": dict, "eta": dict}
        self._snapshots: dict[str, dict] = {}
        registry.on_count_change(self.broadcast_visitor_count)

    async def connect(self, url: str | None = None) -> None:
        self._redis = aioredis.from_url(
            url or settings.redis_url,
            decode_responses=False,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
        )

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # -- trip updates -------------------------------------------------------

    async def publish_update(
        self,
        trip_id: str,
        location: LocationBroadcast,
        events: list[StopEvent],
        eta: EtaUpdateBroadcast | None,
        publisher: Connection | None = None,
    ) -> None:
        """Location, then stop events, then ETA, to every subscriber of the trip."""
        location_data = location.wire()
        eta_data = eta.wire() if eta is not None else None

        messages: list[tuple[str, dict]] = [(TRIP_LOCATION_UPDATE, location_data)]
        for ev in events:
            name = TRIP_STOP_ARRIVED if ev.kind is EventKind.ARRIVED else TRIP_STOP_LEFT
            messages.append((name, StopEventBroadcast(
                trip_id=ev.trip_id,
                stop_index=ev.stop_index,
                stop_name=ev.stop_name,
                timestamp=ev.timestamp,
            ).wire()))
        if eta_data is not None:
            messages.append((TRIP_ETA_UPDATE, eta_data))

        for conn in self.registry.subscribers(trip_id):
            for name, data in messages:
                self.registry.deliver(conn, name, data)

        # The driver's own copy of the location doubles as its "synced" ack
        if publisher is not None and trip_id not in publisher.subscriptions:
            self.registry.deliver(publisher, TRIP_LOCATION_UPDATE, location_data)

        snapshot = self._snapshots.setdefault(trip_id, {})
        snapshot["location"] = location_data
        if eta_data is not None:
            snapshot["eta"] = eta_data

        await self._mirror(trip_id, snapshot, messages)

    async def publish_sos(self, sos: SosMessage) -> int:
        """Deliver an SOS to trip subscribers and every admin; returns recipients."""
        data = sos.wire()
        recipients = {c.id: c for c in self.registry.subscribers(sos.trip_id)}
        for admin in self.registry.admins():
            recipients.setdefault(admin.id, admin)

        delivered = 0
        for conn in recipients.values():
            if self.registry.deliver(conn, TRIP_SOS, data):
                delivered += 1
        logger.warning("SOS on trip %s (%s) delivered to %d connections", sos.trip_id, sos.message, delivered)

        if self._redis:
            try:
                await self._redis.publish(
                    CHANNEL_PREFIX + sos.trip_id,
                    orjson.dumps({"event": TRIP_SOS, "data": data}),
                )
            except Exception:
                logger.exception("Failed to publish SOS to Redis")
        return delivered

    # -- snapshots ----------------------------------------------------------

    async def get_snapshot(self, trip_id: str) -> dict | None:
        """Latest location/ETA for a trip, from memory or the Redis mirror."""
        snapshot = self._snapshots.get(trip_id)
        if snapshot:
            return snapshot
        if self._redis:
            try:
                data = await self._redis.get(STATE_KEY.format(trip_id=trip_id))
                if data:
                    return orjson.loads(data)
            except Exception:
                logger.exception("Failed to get trip state from Redis")
        return None

    async def send_snapshot(self, conn: Connection, trip_id: str) -> bool:
        """Catch a (re)subscribing connection up with the latest state only."""
        snapshot = await self.get_snapshot(trip_id)
        if not snapshot:
            return False
        if "location" in snapshot:
            self.registry.deliver(conn, TRIP_LOCATION_UPDATE, snapshot["location"])
        if "eta" in snapshot:
            self.registry.deliver(conn, TRIP_ETA_UPDATE, snapshot["eta"])
        return True

    async def forget(self, trip_id: str) -> None:
        self._snapshots.pop(trip_id, None)
        if self._redis:
            try:
                await self._redis.delete(STATE_KEY.format(trip_id=trip_id))
            except Exception:
                logger.exception("Failed to drop trip state from Redis")

    # -- visitors -----------------------------------------------------------

    def broadcast_visitor_count(self, count: int) -> None:
        for conn in self.registry.all():
            self.registry.deliver(conn, LIVE_VISITORS, count)

    # ------------------------------------------------------------------

    async def _mirror(self, trip_id: str, snapshot: dict, messages: list[tuple[str, dict]]) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(STATE_KEY.format(trip_id=trip_id), orjson.dumps(snapshot))
            channel = CHANNEL_PREFIX + trip_id
            for name, data in messages:
                await self._redis.publish(channel, orjson.dumps({"event": name, "data": data}))
        except Exception:
            logger.exception("Failed to publish trip %s to Redis", trip_id)

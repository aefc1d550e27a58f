"""WebSocket endpoint for the real-time relay channel."""

import asyncio
import logging
import uuid

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from trackmate.schemas.messages import (
    AUTH_TOKEN,
    DRIVER_LOCATION_UPDATE,
    DRIVER_SOS,
    STUDENT_SUBSCRIBE,
    STUDENT_UNSUBSCRIBE,
    AuthMessage,
    SubscribeMessage,
    decode,
    encode,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Will be set by main.py on startup
registry = None
broadcaster = None
ingest = None


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    """Write queued messages to the socket in order."""
    try:
        while True:
            data = await outbox.get()
            if not isinstance(data, bytes):
                data = encode(*data)
            await websocket.send_bytes(data)
    except (WebSocketDisconnect, RuntimeError):
        logger.debug("Socket closed while sending, outbox pump stopped")


async def dispatch(conn, event: str | None, data: object) -> None:
    """Route one inbound message to the relay service that owns it."""
    if event == AUTH_TOKEN:
        try:
            msg = AuthMessage.model_validate(data)
        except ValidationError:
            logger.info("Connection %s sent malformed auth", conn.id)
            return
        await registry.authenticate(conn.id, msg.token)
    elif event == DRIVER_LOCATION_UPDATE:
        await ingest.handle_location(conn, data)
    elif event == DRIVER_SOS:
        await ingest.handle_sos(conn, data)
    elif event in (STUDENT_SUBSCRIBE, STUDENT_UNSUBSCRIBE):
        try:
            msg = SubscribeMessage.model_validate(data)
        except ValidationError:
            return
        if event == STUDENT_SUBSCRIBE:
            if registry.subscribe(conn.id, msg.trip_id):
                await broadcaster.send_snapshot(conn, msg.trip_id)
        else:
            registry.unsubscribe(conn.id, msg.trip_id)
    else:
        logger.debug("Connection %s sent unknown event %r", conn.id, event)


@router.websocket("/ws")
async def relay_ws(websocket: WebSocket) -> None:
    """Bidirectional channel for drivers, students and admins."""
    await websocket.accept()

    if registry is None or ingest is None:
        await websocket.close(code=1011, reason="Service not ready")
        return

    conn = registry.register(uuid.uuid4().hex)
    pump = asyncio.create_task(_pump(websocket, conn.outbox))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text") or message.get("bytes")
            if not raw:
                continue
            try:
                event, data = decode(raw)
            except orjson.JSONDecodeError:
                logger.debug("Connection %s sent invalid JSON", conn.id)
                continue
            await dispatch(conn, event, data)
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("WebSocket error")
    finally:
        registry.deregister(conn.id)
        pump.cancel()

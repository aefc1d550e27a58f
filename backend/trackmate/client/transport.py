"""WebSocket transport for the driver client."""

import asyncio
import logging
from collections.abc import Callable

import orjson
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from trackmate.client.driver_client import DispatchError, DriverClient
from trackmate.schemas.messages import AUTH_READY, AUTH_TOKEN

logger = logging.getLogger(__name__)

RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 30.0


class WebSocketTransport:
    """Keeps one socket to the relay open and reports liveness to the client.

    The client is told it is connected only once the server acknowledged the
    auth token, since the relay discards samples from unauthenticated sockets.
    """

    def __init__(
        self,
        url: str,
        token_provider: Callable[[], str | None],
        on_event: Callable[[str, object], None] | None = None,
        reconnect_base_seconds: float = RECONNECT_BASE_SECONDS,
        reconnect_max_seconds: float = RECONNECT_MAX_SECONDS,
    ) -> None:
        self.url = url
        self.token_provider = token_provider
        self.on_event = on_event
        self.reconnect_base_seconds = reconnect_base_seconds
        self.reconnect_max_seconds = reconnect_max_seconds
        self.client: DriverClient | None = None
        self._ws = None
        self._stopping = asyncio.Event()

    def bind(self, client: DriverClient) -> None:
        self.client = client

    async def send(self, event: str, data: dict) -> None:
        ws = self._ws
        if ws is None:
            raise DispatchError("socket not connected")
        try:
            await ws.send(orjson.dumps({"event": event, "data": data}).decode())
        except (ConnectionClosed, OSError) as e:
            raise DispatchError(f"{type(e).__name__}: {e}") from e

    async def run(self) -> None:
        """Connect, authenticate and reconnect with backoff until ``stop``."""
        attempt = 0
        while not self._stopping.is_set():
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    attempt = 0
                    logger.info("Connected to %s", self.url)
                    await self._authenticate(ws)
                    async for raw in ws:
                        self._handle(raw)
            except (ConnectionClosed, InvalidHandshake, InvalidURI, OSError) as e:
                logger.warning("Relay connection lost: %s", e)
            finally:
                if self._ws is not None:
                    self._ws = None
                    if self.client is not None:
                        self.client.on_disconnect()

            if self._stopping.is_set():
                break
            attempt += 1
            delay = min(self.reconnect_base_seconds * 2 ** attempt, self.reconnect_max_seconds)
            logger.info("Reconnecting in %.1fs", delay)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        self._stopping.set()
        ws = self._ws
        if ws is not None:
            await ws.close()

    async def _authenticate(self, ws) -> None:
        token = self.token_provider()
        if not token:
            logger.warning("No auth token available, staying unauthenticated")
            return
        await ws.send(orjson.dumps({"event": AUTH_TOKEN, "data": {"token": token}}).decode())

    def _handle(self, raw: str | bytes) -> None:
        try:
            message = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.debug("Ignoring non-JSON frame from relay")
            return
        if not isinstance(message, dict):
            return
        event = message.get("event")
        if event == AUTH_READY and self.client is not None:
            self.client.on_connect()
        if self.on_event is not None:
            self.on_event(event, message.get("data"))

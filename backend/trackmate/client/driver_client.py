"""Driver-side location publisher with offline buffering and retry."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from trackmate.client.offline_buffer import OfflineBuffer
from trackmate.schemas.messages import DRIVER_LOCATION_UPDATE, DRIVER_SOS

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_SECONDS = 0.5
RETRY_MAX_SECONDS = 2.0
DRAIN_INTERVAL_SECONDS = 1.0


class DispatchError(Exception):
    """The transport could not hand a message to the server."""


class Transport(Protocol):
    async def send(self, event: str, data: dict) -> None: ...


class DriverClient:
    """Sends location samples, buffering whatever cannot be delivered.

    Invariants:
    - samples reach the transport in the order they were produced;
    - a sample leaves the buffer only after the transport accepted it;
    - at most one retry/drain task exists; scheduling a new one cancels the
      previous one first.
    """

    def __init__(
        self,
        transport: Transport,
        buffer: OfflineBuffer | None = None,
        max_retries: int = MAX_RETRIES,
        retry_base_seconds: float = RETRY_BASE_SECONDS,
        retry_max_seconds: float = RETRY_MAX_SECONDS,
        drain_interval_seconds: float = DRAIN_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.buffer = buffer if buffer is not None else OfflineBuffer()
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.drain_interval_seconds = drain_interval_seconds
        self._sleep = sleep
        self.connected = False
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self.buffer.size()

    @property
    def flushing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def send_location(self, sample: dict) -> bool:
        """Send now if possible; True only when the sample went out immediately."""
        if not self.connected:
            self.buffer.push(sample)
            return False

        if self.buffer.size() or self.flushing:
            # Older samples are still queued; keep FIFO order behind them
            self.buffer.push(sample)
            if not self.flushing:
                self._schedule(retrying=True)
            return False

        try:
            await self.transport.send(DRIVER_LOCATION_UPDATE, sample)
            return True
        except DispatchError as e:
            logger.warning("Location send failed (%s), scheduling retry", e)
            self.buffer.push(sample)
            self._schedule(retrying=True)
            return False

    async def send_sos(self, trip_id: str, message: str, location: dict | None = None) -> bool:
        """SOS goes out directly; it is never buffered behind location samples."""
        try:
            await self.transport.send(DRIVER_SOS, {
                "tripId": trip_id,
                "location": location,
                "message": message,
            })
            return True
        except DispatchError as e:
            logger.error("SOS send failed: %s", e)
            return False

    def on_connect(self) -> None:
        if self.connected and self.flushing:
            # Repeated ack on a live socket; the running drain already owns the buffer
            return
        self.connected = True
        if self.buffer.size():
            logger.info("Connected, draining %d buffered samples", self.buffer.size())
            self._schedule(retrying=False)

    def on_disconnect(self) -> None:
        self.connected = False
        self._cancel()

    async def wait_idle(self) -> None:
        """Wait for the current drain/retry task, if any."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def close(self) -> None:
        self._cancel()

    # ------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        return min(self.retry_base_seconds * 2 ** attempt, self.retry_max_seconds)

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _schedule(self, retrying: bool) -> None:
        self._cancel()
        self._task = asyncio.create_task(self._flush(retrying))

    async def _flush(self, retrying: bool) -> None:
        """Send buffered samples oldest first, pacing successes and backing off on failure."""
        attempt = 1 if retrying else 0
        delay = self._backoff(attempt) if retrying else 0.0
        sent = 0
        while self.connected and self.buffer.size():
            if delay:
                await self._sleep(delay)
            if not self.connected:
                break
            sample = self.buffer.peek()
            try:
                await self.transport.send(DRIVER_LOCATION_UPDATE, sample)
            except DispatchError as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(
                        "Giving up after %d retries (%s), %d samples stay buffered",
                        self.max_retries, e, self.buffer.size(),
                    )
                    return
                delay = self._backoff(attempt)
                logger.debug("Retry %d in %.2fs", attempt, delay)
                continue
            self.buffer.pop()
            sent += 1
            attempt = 0
            delay = self.drain_interval_seconds
        if sent:
            logger.info("Delivered %d buffered samples, %d left", sent, self.buffer.size())

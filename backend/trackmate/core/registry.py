"""Live connection registry: identity, role and trip subscriptions per socket."""

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from trackmate.core.auth import AuthError, TokenValidator
from trackmate.schemas.messages import AUTH_READY

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    ANONYMOUS = "anonymous"
    DRIVER = "driver"
    STUDENT = "student"
    ADMIN = "admin"


SUBSCRIBER_ROLES = {Role.STUDENT, Role.ADMIN}


@dataclass(eq=False)
class Connection:
    id: str
    role: Role = Role.ANONYMOUS
    user_id: str | None = None
    subscriptions: set[str] = field(default_factory=set)
    connected: bool = True
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=100))

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None and self.role is not Role.ANONYMOUS


class ConnectionRegistry:
    """Maps transport connections to identities and subscriptions.

    ``deliver`` puts already-encoded messages on a connection's outbox; the
    transport layer drains it. Delivery to an unknown or closed connection is
    a silent no-op.
    """

    def __init__(
        self,
        validator: TokenValidator,
        auth_timeout: float = 5.0,
        outbox_size: int = 100,
        encode: Callable[[str, object], bytes] | None = None,
    ) -> None:
        self._validator = validator
        self._auth_timeout = auth_timeout
        self._outbox_size = outbox_size
        self._encode = encode
        self._connections: dict[str, Connection] = {}
        self._count_listeners: list[Callable[[int], None]] = []

    # -- lifecycle ----------------------------------------------------------

    def register(self, connection_id: str) -> Connection:
        conn = Connection(id=connection_id, outbox=asyncio.Queue(maxsize=self._outbox_size))
        self._connections[connection_id] = conn
        logger.debug("Connection %s registered (%d live)", connection_id, self.count())
        self._notify_count()
        return conn

    def deregister(self, connection_id: str) -> None:
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return
        conn.connected = False
        conn.subscriptions.clear()
        logger.debug("Connection %s deregistered (%d live)", connection_id, self.count())
        self._notify_count()

    def close(self) -> None:
        for conn in self._connections.values():
            conn.connected = False
        self._connections.clear()

    # -- identity -----------------------------------------------------------

    async def authenticate(self, connection_id: str, token: str | None) -> bool:
        """Bind the token's identity to the connection; False on any failure."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        if not token:
            logger.info("Connection %s sent empty auth token", connection_id)
            return False

        try:
            identity = await asyncio.wait_for(
                self._validator.validate(token), timeout=self._auth_timeout,
            )
        except asyncio.TimeoutError:
            logger.info("Auth for connection %s timed out after %.1fs", connection_id, self._auth_timeout)
            return False
        except AuthError as e:
            logger.info("Auth for connection %s rejected: %s", connection_id, e)
            return False

        try:
            role = Role(identity.role)
        except ValueError:
            logger.info("Connection %s has unknown role %r", connection_id, identity.role)
            return False

        # The socket may have closed while the validator was running.
        if not conn.connected:
            return False

        conn.role = role
        conn.user_id = identity.user_id
        logger.info("Connection %s authenticated as %s %s", connection_id, role.value, identity.user_id)
        self.deliver(conn, AUTH_READY, {})
        return True

    # -- subscriptions ------------------------------------------------------

    def subscribe(self, connection_id: str, trip_id: str) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None or not trip_id or conn.role not in SUBSCRIBER_ROLES:
            return False
        conn.subscriptions.add(trip_id)
        return True

    def unsubscribe(self, connection_id: str, trip_id: str) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None or conn.role not in SUBSCRIBER_ROLES:
            return False
        conn.subscriptions.discard(trip_id)
        return True

    # -- queries ------------------------------------------------------------

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def count(self) -> int:
        return len(self._connections)

    def all(self) -> list[Connection]:
        return list(self._connections.values())

    def subscribers(self, trip_id: str) -> list[Connection]:
        return [c for c in self._connections.values() if trip_id in c.subscriptions]

    def admins(self) -> list[Connection]:
        return [c for c in self._connections.values() if c.role is Role.ADMIN]

    # -- delivery -----------------------------------------------------------

    def on_count_change(self, listener: Callable[[int], None]) -> None:
        self._count_listeners.append(listener)

    def deliver(self, conn: Connection, event: str, data: object) -> bool:
        """Queue one message for a connection; False if dropped."""
        if not conn.connected or self._connections.get(conn.id) is not conn:
            return False
        payload = self._encode(event, data) if self._encode else (event, data)
        try:
            conn.outbox.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Outbox full for connection %s, dropping %s", conn.id, event)
            return False
        return True

    def _notify_count(self) -> None:
        count = self.count()
        for listener in self._count_listeners:
            try:
                listener(count)
            except Exception:
                logger.exception("Visitor count listener failed")

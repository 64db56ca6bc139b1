"""
Client Session

One accepted socket on the server side.

Session Lifecycle:
```
CONNECTING ──> AUTH_PENDING ──> AUTHENTICATED ──> DISCONNECTING ──> CLOSED
                    │                                                 ^
                    └─────────────── (rejected) ──────────────────────┘
```

A session is closed from two places: its own read loop (EOF, DISCONNECT,
bad frame) and the authority (eviction, kick, expiry, shutdown). close()
is idempotent so both may race; only the first call does any work. The
farewell DISCONNECT is bounded by close_timeout so a peer that stopped
reading cannot hold up the closer.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ..exceptions import TransportError
from ..protocol.connection import LineConnection
from ..protocol.messages import Message, create_disconnect

logger = logging.getLogger(__name__)

# Seconds allowed for the farewell DISCONNECT
CLOSE_TIMEOUT = 5.0


class SessionState(Enum):
    CONNECTING = "connecting"
    AUTH_PENDING = "auth_pending"
    AUTHENTICATED = "authenticated"
    DISCONNECTING = "disconnecting"
    CLOSED = "closed"


class ClientSession:
    """Server-side view of one client connection."""

    def __init__(self, connection: LineConnection, session_id: Optional[str] = None,
                 close_timeout: float = CLOSE_TIMEOUT):
        self.connection = connection
        self.close_timeout = close_timeout
        self.session_id = session_id or str(uuid.uuid4())
        self.connected_at = datetime.now(timezone.utc)
        self.state = SessionState.CONNECTING

        # Set once authenticated
        self.username: Optional[str] = None
        self.license_key: Optional[str] = None

    @property
    def remote_address(self) -> str:
        ip, port = self.connection.remote_address
        return f"{ip}:{port}"

    @property
    def ip_address(self) -> str:
        return self.connection.remote_address[0]

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    @property
    def is_closed(self) -> bool:
        return self.state in (SessionState.DISCONNECTING, SessionState.CLOSED)

    def mark_authenticated(self, username: str, license_key: str):
        self.username = username
        self.license_key = license_key
        self.state = SessionState.AUTHENTICATED

    async def send(self, message: Message):
        """Send one message. Raises TransportError if the session is closed."""
        if self.is_closed:
            raise TransportError(f"Session {self.session_id} is closed")
        await self.connection.send(message)

    async def receive(self, timeout: Optional[float] = None) -> Optional[Message]:
        return await self.connection.receive(timeout=timeout)

    async def close(self, reason: Optional[str] = None) -> bool:
        """
        Close the session, telling the peer why when a reason is given.

        Returns:
            True if this call closed the session, False if it was already closing
        """
        if self.is_closed:
            return False
        self.state = SessionState.DISCONNECTING

        if reason:
            try:
                await asyncio.wait_for(self.connection.send(create_disconnect(reason)),
                                       timeout=self.close_timeout)
            except asyncio.TimeoutError:
                logger.debug(f"Disconnect to {self.remote_address} timed out")
            except TransportError as e:
                logger.debug(f"Could not send disconnect to {self.remote_address}: {e}")

        await self.connection.close()
        self.state = SessionState.CLOSED
        logger.debug(f"Session {self.session_id} closed"
                     + (f": {reason}" if reason else ""))
        return True

    def __repr__(self) -> str:
        return (f"ClientSession(id={self.session_id}, user={self.username!r}, "
                f"state={self.state.value})")

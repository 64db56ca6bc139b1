"""
License Client

Design Decision: Request/Response Correlation
=============================================

Messages carry no request id, so a reply has to be matched to the command
that caused it some other way.

Options Considered:
1. Add a correlation id to every message
   - Exact, but changes the wire format
2. Wait for "the next message of type X"
   - Breaks when a NOTIFICATION or an unrelated reply arrives first
3. FIFO per connection
   - The server answers commands of one session strictly in order

Decision: FIFO waiters
- request() queues a waiter with the reply types it accepts
- The receive loop resolves the oldest waiter accepting the message type
- ERROR resolves the oldest pending waiter as a failure (CommandError)
- NOTIFICATIONs never resolve waiters; they go to on_message callbacks

A request that times out or is cancelled keeps its place in the queue,
marked abandoned. The server still owes it a reply; when that reply (or an
ERROR) arrives it is dropped along with the abandoned waiter, instead of
answering a later request.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, FrozenSet, Iterable, List, Optional, Union

from ..exceptions import (
    AuthError, CommandError, ProtocolError, ResponseTimeoutError, TransportError,
)
from ..protocol.connection import DEFAULT_LINE_LIMIT, LineConnection, open_line_connection
from ..protocol.messages import (
    Message, MessageType, create_auth, create_command, create_disconnect,
)
from ..protocol.payloads import PayloadModel, decode_payload

logger = logging.getLogger(__name__)

DEFAULT_PORT = 25599
DEFAULT_RESPONSE_TIMEOUT = 15.0

# Callback types
MessageCallback = Callable[[Message], None]
StatusCallback = Callable[[bool, str], None]


@dataclass
class _Waiter:
    expect: FrozenSet[MessageType]
    future: asyncio.Future
    abandoned: bool = False


class LicenseClient:
    """
    Client side of the session protocol.

    Usage:
        client = LicenseClient("localhost", 25599)
        await client.connect("alice", "LICS-AAAA-BBBB-CCCCC")
        reply = await client.request("list", MessageType.LIST_RESPONSE)
        await client.disconnect()
    """

    def __init__(self, host: str = 'localhost', port: int = DEFAULT_PORT,
                 connect_timeout: float = 10.0,
                 response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
                 max_line_bytes: int = DEFAULT_LINE_LIMIT):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.response_timeout = response_timeout
        self.max_line_bytes = max_line_bytes

        self.username: Optional[str] = None
        self.connection: Optional[LineConnection] = None
        self.connected_since: Optional[datetime] = None

        self._connected = False
        self._receive_task: Optional[asyncio.Task] = None
        self._waiters: Deque[_Waiter] = deque()

        self._message_callbacks: List[MessageCallback] = []
        self._status_callbacks: List[StatusCallback] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    # === Events ===

    def on_message(self, callback: MessageCallback):
        """Register a callback for every message other than DISCONNECT."""
        self._message_callbacks.append(callback)

    def on_status_change(self, callback: StatusCallback):
        """Register a callback for (is_connected, reason) changes."""
        self._status_callbacks.append(callback)

    def _fire_status(self, is_connected: bool, reason: str):
        logger.debug(f"Connection status: connected={is_connected} ({reason})")
        for callback in self._status_callbacks:
            try:
                callback(is_connected, reason)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def _fire_message(self, message: Message):
        for callback in self._message_callbacks:
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    # === Connection ===

    async def connect(self, username: str, license_key: str,
                      timeout: Optional[float] = None) -> bool:
        """
        Connect and authenticate.

        Args:
            username: Display name sent with the license key
            license_key: License key
            timeout: Bound on waiting for the server's answer (None waits forever)

        Returns:
            True once authenticated

        Raises:
            TransportError: the connection could not be opened or broke
            AuthError: the server refused the license (carries its reason)
            ProtocolError: the server answered with something other than AUTH
            ResponseTimeoutError: no answer within timeout
        """
        if self._connected:
            return True

        try:
            self.connection = await open_line_connection(
                self.host, self.port,
                timeout=self.connect_timeout,
                limit=self.max_line_bytes,
            )
        except TransportError as e:
            self._fire_status(False, f"Connection error: {e.message}")
            raise

        try:
            await self.connection.send(create_auth(username, license_key))
            reply = await self.connection.receive(timeout=timeout)
        except asyncio.TimeoutError:
            await self._abort("No response from server")
            raise ResponseTimeoutError("No response from server")
        except TransportError as e:
            await self._abort(f"Connection error: {e.message}")
            raise
        except ProtocolError:
            await self._abort("Unexpected response from server")
            raise

        if reply is None:
            await self._abort("No response from server")
            raise TransportError("Connection closed before authentication completed")

        if reply.type == MessageType.DISCONNECT:
            await self._abort(reply.content)
            raise AuthError(reply.content or "Authentication rejected")

        if reply.type != MessageType.AUTH:
            await self._abort("Unexpected response from server")
            raise ProtocolError(f"Unexpected response to AUTH: {reply.type.value}")

        self.username = username
        self.connected_since = datetime.now(timezone.utc)
        self._connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())

        logger.info(f"Connected to {self.host}:{self.port} as {username!r}")
        self._fire_status(True, "Connected to server.")
        return True

    async def _abort(self, reason: str):
        """Close a connection that never became authenticated."""
        if self.connection:
            await self.connection.close()
            self.connection = None
        self._fire_status(False, reason)

    async def disconnect(self, reason: str = "Client disconnected"):
        """Tell the server goodbye (best effort) and tear down."""
        if not self._connected:
            return

        try:
            await self.connection.send(
                create_disconnect(reason, sender=self.username or "")
            )
        except TransportError as e:
            logger.debug(f"Could not send disconnect: {e}")

        await self._teardown("Disconnected from server.")

        task = self._receive_task
        self._receive_task = None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _teardown(self, reason: str):
        if not self._connected:
            return
        self._connected = False

        error = TransportError(reason)
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.future.done():
                waiter.future.set_exception(error)

        if self.connection:
            await self.connection.close()

        logger.info(f"Disconnected from {self.host}:{self.port}: {reason}")
        self._fire_status(False, reason)

    # === Receiving ===

    async def _receive_loop(self):
        """Read messages until the server disconnects or the socket closes."""
        reason = "Connection to server lost."
        try:
            while self._connected:
                message = await self.connection.receive()
                if message is None:
                    break

                if message.type == MessageType.DISCONNECT:
                    reason = message.content or "Disconnected by server"
                    logger.info(f"Server disconnected us: {reason}")
                    break

                self._dispatch(message)
                self._fire_message(message)
        except ProtocolError as e:
            reason = f"Protocol error: {e.message}"
            logger.warning(reason)
        except TransportError as e:
            logger.debug(f"Receive failed: {e}")

        await self._teardown(reason)

    def _dispatch(self, message: Message):
        """Resolve the oldest waiter this message answers."""
        for waiter in self._waiters:
            if waiter.abandoned:
                if message.type == MessageType.ERROR or message.type in waiter.expect:
                    self._waiters.remove(waiter)
                    logger.debug(f"Dropped late {message.type.value} of an abandoned request")
                    return
                continue
            if waiter.future.done():
                continue
            if message.type == MessageType.ERROR:
                waiter.future.set_exception(CommandError(message.content))
                return
            if message.type in waiter.expect:
                waiter.future.set_result(message)
                return

        if message.type == MessageType.ERROR:
            logger.warning(f"Server error: {message.content}")

    # === Commands ===

    async def send_command(self, text: str):
        """Send one COMMAND line without waiting for a reply."""
        if not self._connected:
            raise TransportError("Not connected to server")
        await self.connection.send(create_command(text, sender=self.username or ""))

    async def request(self, command: str,
                      expect: Union[MessageType, Iterable[MessageType]],
                      timeout: Optional[float] = None) -> Message:
        """
        Send a command and wait for its reply.

        Args:
            command: Command line, e.g. "download game"
            expect: Reply type(s) that answer this command
            timeout: Seconds to wait (default: response_timeout)

        Raises:
            TransportError: not connected, or the connection dropped
            CommandError: the server answered with ERROR
            ResponseTimeoutError: no reply in time
        """
        if not self._connected:
            raise TransportError("Not connected to server")

        if isinstance(expect, MessageType):
            expected = frozenset({expect})
        else:
            expected = frozenset(expect)
        timeout = self.response_timeout if timeout is None else timeout

        waiter = _Waiter(expected, asyncio.get_running_loop().create_future())
        self._waiters.append(waiter)
        try:
            await self.send_command(command)
            return await asyncio.wait_for(waiter.future, timeout=timeout)
        except asyncio.TimeoutError:
            raise ResponseTimeoutError(
                f"No response to '{command}' within {timeout:g} seconds",
                details={'command': command, 'timeout': timeout},
            )
        finally:
            if waiter.future.cancelled():
                # Timed out or cancelled after sending; the reply is still owed
                waiter.abandoned = True
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass

    async def request_payload(self, command: str, expect: MessageType,
                              timeout: Optional[float] = None) -> PayloadModel:
        """request() and decode the typed payload of the reply."""
        message = await self.request(command, expect, timeout=timeout)
        return decode_payload(message)

    def get_stats(self) -> dict:
        """Get client statistics."""
        return {
            'connected': self._connected,
            'server': f"{self.host}:{self.port}",
            'username': self.username,
            'connected_since': self.connected_since.isoformat() if self.connected_since else None,
            'bytes_sent': self.connection.bytes_sent if self.connection else 0,
            'bytes_received': self.connection.bytes_received if self.connection else 0,
            'pending_requests': sum(1 for w in self._waiters if not w.abandoned),
        }

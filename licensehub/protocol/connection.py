"""
Line Connection

Low-level transport shared by the server session and the client driver:
one asyncio stream pair, one Message per line.

Writes are serialized with a per-connection lock. Reads are not locked;
each connection has exactly one reader task.

A peer that stops reading fills the socket buffer and makes drain() block
forever. Writes are bounded by write_timeout. A connection whose write timed
out or was cancelled is broken, and close() aborts it instead of waiting
for a flush.
"""

import asyncio
import logging
from typing import Optional, Tuple

from ..exceptions import ProtocolError, TransportError
from .messages import Message

logger = logging.getLogger(__name__)

# Default asyncio stream limit is 64KB, too small for large DOWNLOAD_INFO lines
DEFAULT_LINE_LIMIT = 16 * 1024 * 1024

# Upper bound on waiting for a close to complete
CLOSE_TIMEOUT = 5.0


class LineConnection:
    """
    Newline-delimited JSON message transport over TCP.

    Thread-safe for senders: a lock ensures a peer never sees two
    interleaved writes on the same socket.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 write_timeout: Optional[float] = None):
        self.reader = reader
        self.writer = writer
        self.write_timeout = write_timeout
        self._closed = False
        self._broken = False
        self._send_lock = asyncio.Lock()

        # Statistics
        self.bytes_sent = 0
        self.bytes_received = 0

    @property
    def remote_address(self) -> Tuple[str, int]:
        """Get remote peer address."""
        peer = self.writer.get_extra_info('peername')
        if not peer:
            return ('unknown', 0)
        return peer[0], peer[1]

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def send(self, message: Message):
        """
        Send one message.

        Raises:
            TransportError: connection closed, write failed or timed out
        """
        if self._closed:
            raise TransportError("Connection closed")

        data = message.to_line().encode('utf-8')
        async with self._send_lock:
            if self._broken:
                raise TransportError("Connection broken by an unfinished write")
            try:
                self.writer.write(data)
                await asyncio.wait_for(self.writer.drain(), timeout=self.write_timeout)
            except asyncio.TimeoutError:
                self._broken = True
                raise TransportError(
                    f"Send timed out after {self.write_timeout} seconds"
                )
            except asyncio.CancelledError:
                self._broken = True
                raise
            except (ConnectionError, OSError) as e:
                raise TransportError(f"Send failed: {e}")
            self.bytes_sent += len(data)

    async def receive(self, timeout: Optional[float] = None) -> Optional[Message]:
        """
        Receive one message.

        Returns:
            The decoded message, or None on EOF

        Raises:
            ProtocolError: the line is not a valid message
            TransportError: the read failed
            asyncio.TimeoutError: no line within `timeout`
        """
        if self._closed:
            return None

        try:
            if timeout is None:
                line = await self.reader.readline()
            else:
                line = await asyncio.wait_for(self.reader.readline(), timeout=timeout)
        except asyncio.TimeoutError:
            # TimeoutError is an OSError on 3.11+, keep it distinct
            raise
        except ValueError as e:
            # Raised by StreamReader when a line exceeds the buffer limit
            raise ProtocolError(f"Message too large: {e}")
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Receive failed: {e}")

        if not line:
            return None

        self.bytes_received += len(line)
        return Message.from_line(line)

    async def close(self):
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._broken:
            self.writer.transport.abort()
            return

        try:
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(),
                                   timeout=self.write_timeout or CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("Close did not complete in time, aborting connection")
            self.writer.transport.abort()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error while closing connection: {e}")


async def open_line_connection(host: str, port: int,
                               timeout: float = 10.0,
                               limit: int = DEFAULT_LINE_LIMIT) -> LineConnection:
    """
    Connect to a line-protocol server.

    Raises:
        TransportError: connection refused, unreachable, or timed out
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, limit=limit),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        raise TransportError(f"Timed out connecting to {host}:{port}")
    except (ConnectionError, OSError) as e:
        raise TransportError(f"Failed to connect to {host}:{port}: {e}")

    return LineConnection(reader, writer)

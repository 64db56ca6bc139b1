"""
License Server - Main Controller

Orchestrates the server-side components:
- TCP accept loop, one task per client connection
- Session authority (authentication, presence, licenses)
- Command handler (download/list/info/status)
- Chunk storage and blob URLs for downloads
- Hourly license expiration sweep

Shutdown Order:
1. Stop accepting connections
2. Cancel the sweep task
3. Disconnect every session ("Server is shutting down.")
4. Cancel leftover connection tasks
5. Persist users and close the user store
"""

import asyncio
import logging
from typing import Optional, Set

from ..config import Config
from ..exceptions import AuthError, ProtocolError, TransportError
from ..file.blobstore import BlobStore, LocalBlobStore
from ..file.storage import ChunkStorage
from ..protocol.connection import LineConnection
from ..protocol.messages import MessageType, create_error, parse_auth
from ..storage.database import UserStore
from .authority import SessionAuthority, REASON_SHUTDOWN
from .commands import CommandHandler
from .session import ClientSession, SessionState

logger = logging.getLogger(__name__)

REASON_AUTH_REQUIRED = "Authentication required"
REASON_AUTH_TIMEOUT = "Authentication timed out"


class LicenseServer:
    """
    A complete license-gated session server.

    Usage:
        server = LicenseServer(config)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(self, config: Optional[Config] = None,
                 store: Optional[UserStore] = None,
                 storage: Optional[ChunkStorage] = None,
                 blob_store: Optional[BlobStore] = None):
        self.config = config or Config()

        self.storage = storage or ChunkStorage(
            self.config.data_dir,
            chunk_size=self.config.chunk_size,
            strict_integrity=self.config.strict_integrity,
        )
        self.store = store or UserStore(self.config.users_db_path)
        self.blob_store = blob_store or LocalBlobStore(self.config.download_base_url)

        self.authority = SessionAuthority(
            store=self.store,
            license_days=self.config.license_days,
            rate_limit=self.config.default_rate_limit,
        )
        self.commands = CommandHandler(
            self.authority, self.storage, self.blob_store,
            server_address=f"{self.config.host}:{self.config.port}",
        )

        self.server: Optional[asyncio.AbstractServer] = None
        self.port = self.config.port
        self._sweep_task: Optional[asyncio.Task] = None
        self._connection_tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Open the user store, load users, and start accepting clients."""
        if self._running:
            return

        if not self.store.is_connected:
            await self.store.connect()
        await self.authority.load()

        self.server = await asyncio.start_server(
            self._handle_connection,
            self.config.host,
            self.config.port,
            limit=self.config.max_line_bytes,
        )
        # Port 0 binds an ephemeral port
        self.port = self.server.sockets[0].getsockname()[1]
        self.commands.server_address = f"{self.config.host}:{self.port}"

        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self._running = True

        logger.info(f"License server listening on {self.config.host}:{self.port}")

    async def stop(self):
        """Shut down in order, persisting users last."""
        if not self._running:
            return
        self._running = False
        logger.info("Stopping license server...")

        self.server.close()

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        closed = await self.authority.disconnect_all(REASON_SHUTDOWN)
        logger.info(f"Disconnected {closed} sessions")

        leftover = [t for t in self._connection_tasks if not t.done()]
        for task in leftover:
            task.cancel()
        if leftover:
            await asyncio.gather(*leftover, return_exceptions=True)

        await self.server.wait_closed()
        self.server = None

        await self.authority.save()
        await self.store.close()

        logger.info("License server stopped")

    # === Connections ===

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle one client connection from accept to close."""
        task = asyncio.current_task()
        self._connection_tasks.add(task)

        session = ClientSession(
            LineConnection(reader, writer, write_timeout=self.config.write_timeout)
        )
        logger.debug(f"New connection from {session.remote_address} "
                     f"(session {session.session_id})")

        try:
            if await self._authenticate(session):
                await self._serve(session)
        except TransportError as e:
            logger.debug(f"Connection error for {session.remote_address}: {e}")
        finally:
            await session.close()
            await self.authority.release(session)
            self._connection_tasks.discard(task)
            logger.debug(f"Connection closed: {session.remote_address}")

    async def _authenticate(self, session: ClientSession) -> bool:
        """Run the AUTH_PENDING state. Returns True once authenticated."""
        session.state = SessionState.AUTH_PENDING

        try:
            message = await session.receive(timeout=self.config.auth_timeout)
        except asyncio.TimeoutError:
            logger.info(f"Authentication timed out for {session.remote_address}")
            await session.close(REASON_AUTH_TIMEOUT)
            return False
        except ProtocolError as e:
            logger.warning(f"Invalid first message from {session.remote_address}: {e}")
            await session.close(f"Invalid message: {e.message}")
            return False

        if message is None:
            return False

        if message.type != MessageType.AUTH:
            logger.warning(f"{session.remote_address} sent {message.type.value} "
                           f"before authenticating")
            await session.close(REASON_AUTH_REQUIRED)
            return False

        try:
            username, license_key = parse_auth(message)
            await self.authority.authenticate(session, username, license_key)
        except (ProtocolError, AuthError) as e:
            await session.close(e.message)
            return False

        return True

    async def _serve(self, session: ClientSession):
        """Run the AUTHENTICATED state until the session ends."""
        while not session.is_closed:
            try:
                message = await session.receive()
            except ProtocolError as e:
                logger.warning(f"Protocol error from {session.username!r}: {e}")
                break

            if message is None:
                break

            if message.type == MessageType.COMMAND:
                self.authority.notify_command(session, message.content)
                try:
                    reply = await self.commands.handle(session, message.content)
                except Exception as e:
                    # A failing command answers with ERROR, the session lives on
                    logger.error(f"Command {message.content!r} failed: {e}")
                    reply = create_error(f"Error processing command: {e}")
                await session.send(reply)

            elif message.type == MessageType.DISCONNECT:
                logger.info(f"{session.username!r} disconnected: {message.content}")
                break

            else:
                logger.debug(f"Ignoring {message.type.value} from {session.username!r}")

    # === Background tasks ===

    async def _sweep_loop(self):
        """Disconnect expired licenses every sweep_interval seconds."""
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.authority.sweep()
            except Exception as e:
                logger.error(f"Expiration sweep failed: {e}")

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            'running': self._running,
            'port': self.port,
            'connections': len(self._connection_tasks),
            'authority': self.authority.get_stats(),
            'storage': vars(self.storage.get_stats()),
        }

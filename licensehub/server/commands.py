"""
Command Handler

Answers COMMAND messages from authenticated sessions. Every command yields
exactly one reply: its typed response, or an ERROR with a readable reason.

Commands:
| Command        | Reply            |
|----------------|------------------|
| download <id>  | DOWNLOAD_INFO    |
| list           | LIST_RESPONSE    |
| info           | INFO_RESPONSE    |
| status         | STATUS_RESPONSE  |
"""

import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List

from .. import __version__
from ..file.blobstore import BlobStore
from ..file.storage import ChunkStorage
from ..protocol.messages import Message, create_error
from ..protocol.payloads import (
    ChunkRef, DownloadInfo, ListItem, ListResponse, LicenseInfo, ConnectionInfo,
    InfoResponse, ServerStatus, ConnectionStatus, StatusResponse, create_response,
)
from .authority import SessionAuthority
from .session import ClientSession

logger = logging.getLogger(__name__)

CommandFunc = Callable[[ClientSession, List[str]], Awaitable[Message]]


class CommandHandler:
    """Dispatches command lines to their handlers."""

    def __init__(self, authority: SessionAuthority, storage: ChunkStorage,
                 blob_store: BlobStore, server_address: str = ""):
        self.authority = authority
        self.storage = storage
        self.blob_store = blob_store
        self.server_address = server_address
        self.started_at = time.time()

        self._handlers: Dict[str, CommandFunc] = {}
        self._setup_handlers()

    def _setup_handlers(self):
        self.set_handler('download', self._handle_download)
        self.set_handler('list', self._handle_list)
        self.set_handler('info', self._handle_info)
        self.set_handler('status', self._handle_status)

    def set_handler(self, name: str, handler: CommandFunc):
        """Set (or replace) the handler of a command."""
        self._handlers[name.lower()] = handler

    @property
    def commands(self) -> List[str]:
        return sorted(self._handlers)

    async def handle(self, session: ClientSession, text: str) -> Message:
        """Handle one command line and build the reply."""
        parts = text.strip().split()
        if not parts:
            return create_error("Empty command")

        name, args = parts[0].lower().lstrip('/'), parts[1:]
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning(f"Unknown command from {session.username!r}: {name}")
            return create_error(f"Unknown command: {name}")

        logger.debug(f"Command from {session.username!r}: {text.strip()}")
        return await handler(session, args)

    # === Handlers ===

    async def _handle_download(self, session: ClientSession, args: List[str]) -> Message:
        if not args:
            return create_error("Error: No file ID provided")

        identifier = ' '.join(args)
        manifest = self.storage.find_manifest(identifier)
        if manifest is None:
            return create_error(f"Error: File '{identifier}' not found")

        info = DownloadInfo(
            item_id=identifier,
            title=manifest.title,
            file_id=manifest.file_id,
            file_name=manifest.file_name,
            chunk_count=manifest.chunk_count,
            chunks=[
                ChunkRef(
                    index=chunk.index,
                    id=chunk.id,
                    size=chunk.size,
                    url=self.blob_store.url_for(manifest.file_id, chunk),
                    hash=chunk.hash or None,
                )
                for chunk in manifest.ordered_chunks()
            ],
            total_size=manifest.file_size,
        )
        logger.info(f"Sending download info for {manifest.title!r} "
                    f"({manifest.chunk_count} chunks) to {session.username!r}")
        return create_response(info)

    async def _handle_list(self, session: ClientSession, args: List[str]) -> Message:
        manifests = self.storage.list_manifests()
        items = [
            ListItem(
                file_id=m.file_id,
                title=m.title,
                file_name=m.file_name,
                size=m.file_size,
                chunk_count=m.chunk_count,
                created_at=datetime.fromtimestamp(m.created_at, tz=timezone.utc),
            )
            for m in manifests
        ]
        return create_response(ListResponse(items=items, total_count=len(items)))

    async def _handle_info(self, session: ClientSession, args: List[str]) -> Message:
        user = self.authority.get_user(session.license_key)
        if user is None:
            return create_error("Error: User information not found. Please reconnect.")

        info = InfoResponse(
            license_info=LicenseInfo(
                username=user.username,
                license_key=user.license_key,
                expiration_date=user.license_expiration,
                is_active=not user.is_expired(),
                first_login=user.first_login,
                last_login=user.last_login,
                ip_address=user.ip_address,
                session_id=user.active_session_id,
                rate_limit=user.rate_limit,
            ),
            connection_info=ConnectionInfo(
                server_address=self.server_address,
                connected_since=session.connected_at,
            ),
        )
        return create_response(info)

    async def _handle_status(self, session: ClientSession, args: List[str]) -> Message:
        stats = self.authority.get_stats()
        status = StatusResponse(
            server_status=ServerStatus(
                version=__version__,
                uptime_seconds=round(time.time() - self.started_at, 1),
                connected_users=stats['connected_users'],
                total_users=stats['total_users'],
                active_licenses=stats['active_licenses'],
                expired_licenses=stats['expired_licenses'],
            ),
            connection_status=ConnectionStatus(
                is_connected=not session.is_closed,
                connected_since=session.connected_at,
                bytes_sent=session.connection.bytes_sent,
                bytes_received=session.connection.bytes_received,
            ),
        )
        return create_response(status)

"""
REST API for the License Server

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - Modern, fast, auto-docs, async support
2. Flask - Simple, widely used, but sync-focused
3. aiohttp - Async, but less features

Decision: FastAPI
- Runs on the same event loop as the session server
- Automatic OpenAPI documentation
- Pydantic integration for validation

Two jobs:
- Blob host: GET /api/chunks/{file_id}/{file_name} serves chunk blobs,
  the URLs handed out in DOWNLOAD_INFO point here
- Admin surface: users, broadcast, kick, extend, message
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..exceptions import NotFoundError

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class ServerStatusModel(BaseModel):
    """Server status response."""
    running: bool
    port: int
    connected_users: int
    total_users: int
    active_licenses: int
    expired_licenses: int
    files: int


class FileInfo(BaseModel):
    """Information about a stored file."""
    file_id: str
    title: str
    file_name: str
    size: int
    chunk_count: int
    created_at: datetime


class UserInfo(BaseModel):
    """A license user."""
    username: str
    license_key: str
    ip_address: str
    first_login: datetime
    last_login: datetime
    license_expiration: datetime
    rate_limit: int
    is_online: bool
    active_session_id: Optional[str] = None


class BroadcastRequest(BaseModel):
    message: str = Field(min_length=1)


class KickRequest(BaseModel):
    username: str
    reason: Optional[str] = None


class ExtendRequest(BaseModel):
    license_key: str
    days: int = Field(gt=0)


class MessageRequest(BaseModel):
    username: str
    message: str = Field(min_length=1)


def _user_info(user) -> UserInfo:
    return UserInfo(
        username=user.username,
        license_key=user.license_key,
        ip_address=user.ip_address,
        first_login=user.first_login,
        last_login=user.last_login,
        license_expiration=user.license_expiration,
        rate_limit=user.rate_limit,
        is_online=user.is_online,
        active_session_id=user.active_session_id,
    )


# === API Creation ===

def create_app(server) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        server: LicenseServer whose authority and storage are exposed
    """
    app = FastAPI(
        title="licensehub API",
        description="Chunk blob host and admin API for the license server",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    authority = server.authority
    storage = server.storage

    # === General ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "licensehub",
            "version": __version__,
            "status": "running" if server.is_running else "not running",
        }

    @app.get("/status", response_model=ServerStatusModel, tags=["General"])
    async def get_status():
        """Get server status."""
        stats = authority.get_stats()
        return ServerStatusModel(
            running=server.is_running,
            port=server.port,
            connected_users=stats['connected_users'],
            total_users=stats['total_users'],
            active_licenses=stats['active_licenses'],
            expired_licenses=stats['expired_licenses'],
            files=storage.get_stats().file_count,
        )

    # === Files ===

    @app.get("/files", response_model=List[FileInfo], tags=["Files"])
    async def list_files():
        """List all stored files."""
        return [
            FileInfo(
                file_id=m.file_id,
                title=m.title,
                file_name=m.file_name,
                size=m.file_size,
                chunk_count=m.chunk_count,
                created_at=datetime.fromtimestamp(m.created_at, tz=timezone.utc),
            )
            for m in storage.list_manifests()
        ]

    @app.get("/api/chunks/{file_id}/{file_name}", tags=["Files"])
    async def get_chunk(file_id: str, file_name: str):
        """Serve one chunk blob."""
        try:
            path = storage.chunk_path(file_id, file_name)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message)

        logger.debug(f"Serving chunk {file_id}/{file_name}")
        return FileResponse(path, media_type="application/octet-stream",
                            filename=file_name)

    # === Admin ===

    @app.get("/admin/users", response_model=List[UserInfo], tags=["Admin"])
    async def list_users():
        """List every license user."""
        return [_user_info(u) for u in authority.get_all_users()]

    @app.get("/admin/online", response_model=List[UserInfo], tags=["Admin"])
    async def list_online_users():
        """List users with a live session."""
        return [_user_info(u) for u in authority.get_online_users()]

    @app.post("/admin/broadcast", tags=["Admin"])
    async def broadcast(request: BroadcastRequest):
        """Send a notification to every connected client."""
        delivered = await authority.broadcast(request.message)
        return {"success": True, "delivered": delivered}

    @app.post("/admin/kick", tags=["Admin"])
    async def kick(request: KickRequest):
        """Disconnect a user by name."""
        if request.reason:
            kicked = await authority.kick(request.username, request.reason)
        else:
            kicked = await authority.kick(request.username)
        if not kicked:
            raise HTTPException(status_code=404,
                                detail=f"User '{request.username}' is not online")
        return {"success": True}

    @app.post("/admin/extend", tags=["Admin"])
    async def extend(request: ExtendRequest):
        """Extend a license by a number of days."""
        if not await authority.extend_license(request.license_key, request.days):
            raise HTTPException(status_code=404,
                                detail=f"License key '{request.license_key}' not found")
        user = authority.get_user(request.license_key)
        return {"success": True, "license_expiration": user.license_expiration.isoformat()}

    @app.post("/admin/message", tags=["Admin"])
    async def message_user(request: MessageRequest):
        """Send a notification to one user."""
        if not await authority.message_user(request.username, request.message):
            raise HTTPException(status_code=404,
                                detail=f"User '{request.username}' is not online")
        return {"success": True}

    return app


async def run_api_server(server, host: str = "0.0.0.0", port: int = 5000):
    """
    Run the API server.

    Args:
        server: LicenseServer instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(server)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    uvicorn_server = uvicorn.Server(config)
    await uvicorn_server.serve()

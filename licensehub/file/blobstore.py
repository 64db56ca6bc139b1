"""
Blob Store

Chunk blobs are fetched by clients from URLs handed out in DOWNLOAD_INFO.
A BlobStore turns a (file id, chunk) pair into such a URL. The local store
points at the REST API's /api/chunks route, which serves blobs straight out
of ChunkStorage.

Blob names come from user file names and may contain '#', '?', '%' or
spaces, so every path segment is percent-encoded.
"""

from abc import ABC, abstractmethod
from urllib.parse import quote

from .manifest import FileChunk


class BlobStore(ABC):
    """Maps chunks to fetchable URLs."""

    @abstractmethod
    def url_for(self, file_id: str, chunk: FileChunk) -> str:
        """Get the download URL of one chunk."""


class LocalBlobStore(BlobStore):
    """Blobs served by the local REST API."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip('/')

    def url_for(self, file_id: str, chunk: FileChunk) -> str:
        return f"{self.base_url}/{quote(file_id, safe='')}/{quote(chunk.file_name, safe='')}"

"""
Transfer Orchestrator

Design Decision: Download Strategy
===================================

Options Considered:
1. Parallel chunk fetches
   - Faster on fat links
   - Out-of-order progress, more open connections to the blob host

2. Sequential fetches in index order
   - Simple, predictable progress
   - One slow chunk stalls the rest

Decision: Sequential, ascending index
- Blob hosts rate-limit parallel downloads per client
- Progress reads naturally as "chunk i of N"
- Any failed fetch aborts the whole download

Download Flow:
1. Ask the server for DOWNLOAD_INFO (`download <id>`)
2. Fetch every chunk URL into downloads/<title>/chunks/chunk_<i>.bin
3. Verify each chunk's MD5 when the server sent one
4. Rebuild the file from a manifest synthesized from DOWNLOAD_INFO
5. Delete the chunk directory unless asked to keep it
"""

import logging
import re
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import aiofiles
import aiofiles.os
import httpx

from ..exceptions import IntegrityError, TransportError
from ..file.chunker import FileChunker, file_md5
from ..file.manifest import FileChunk, Manifest
from ..protocol.messages import MessageType
from ..protocol.payloads import DownloadInfo
from .driver import LicenseClient

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 60.0

# Bytes written per aiofiles write while streaming a chunk
STREAM_CHUNK_SIZE = 64 * 1024

ByteCallback = Callable[[int], None]


# === Fetchers ===

class ChunkFetcher(ABC):
    """Fetches one chunk URL into a local file."""

    @abstractmethod
    async def fetch(self, url: str, dest_path: Path,
                    on_bytes: Optional[ByteCallback] = None) -> int:
        """
        Download url into dest_path.

        Returns:
            Number of bytes written

        Raises:
            TransportError: the fetch failed
        """

    async def close(self):
        pass


class HttpChunkFetcher(ChunkFetcher):
    """Streams chunk blobs over HTTP with httpx."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_FETCH_TIMEOUT):
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client

    async def __aenter__(self) -> "HttpChunkFetcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
        return self._client

    async def fetch(self, url: str, dest_path: Path,
                    on_bytes: Optional[ByteCallback] = None) -> int:
        written = 0
        try:
            async with self._get_client().stream("GET", url) as response:
                if response.status_code != 200:
                    raise TransportError(
                        f"Chunk download failed: HTTP {response.status_code} for {url}",
                        details={'url': url, 'status_code': response.status_code},
                    )
                async with aiofiles.open(dest_path, 'wb') as f:
                    async for data in response.aiter_bytes(STREAM_CHUNK_SIZE):
                        await f.write(data)
                        written += len(data)
                        if on_bytes:
                            on_bytes(len(data))
        except httpx.TimeoutException:
            raise TransportError(f"Chunk download timed out after {self._timeout}s: {url}")
        except httpx.HTTPError as e:
            raise TransportError(f"Chunk download failed: {e}", details={'url': url})
        return written

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# === Progress and results ===

@dataclass
class DownloadProgress:
    """Track download progress."""
    total_chunks: int
    total_bytes: int
    downloaded_chunks: int = 0
    bytes_downloaded: int = 0
    current_chunk: Optional[int] = None
    phase: str = 'downloading'  # 'downloading', 'merging', 'complete'
    title: str = ''
    start_time: float = field(default_factory=time.time)

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0, by bytes."""
        if self.total_bytes <= 0:
            return 1.0 if self.downloaded_chunks >= self.total_chunks else 0.0
        return min(self.bytes_downloaded / self.total_bytes, 1.0)

    @property
    def progress_percent(self) -> float:
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.start_time

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_downloaded / elapsed

    def to_dict(self) -> dict:
        return {
            'title': self.title,
            'phase': self.phase,
            'total_chunks': self.total_chunks,
            'downloaded_chunks': self.downloaded_chunks,
            'total_bytes': self.total_bytes,
            'bytes_downloaded': self.bytes_downloaded,
            'progress_percent': round(self.progress_percent, 1),
            'speed_bytes_per_sec': round(self.speed_bytes_per_sec),
        }


ProgressCallback = Callable[[DownloadProgress], None]


@dataclass
class DownloadResult:
    """Outcome of a completed download."""
    title: str
    file_id: str
    output_path: Path
    size: int
    expected_size: int
    chunk_count: int
    hash_mismatches: List[int] = field(default_factory=list)
    chunks_kept: bool = False

    @property
    def size_matches(self) -> bool:
        return self.size == self.expected_size

    @property
    def verified(self) -> bool:
        """True if every chunk hash and the final size matched."""
        return self.size_matches and not self.hash_mismatches


def safe_file_name(name: str) -> str:
    """Make a display title usable as a directory or file name."""
    cleaned = re.sub(r'[<>:"/\\|?*\x00-\x1f]', '_', name).strip().strip('.')
    return cleaned or 'download'


# === Orchestrator ===

class TransferOrchestrator:
    """
    Drives a full download: request, fetch, verify, reassemble.

    Lenient by default: hash and size mismatches are logged and recorded
    on the result. With strict_integrity they raise IntegrityError.
    """

    def __init__(self, client: LicenseClient, download_dir: Path,
                 fetcher: Optional[ChunkFetcher] = None,
                 strict_integrity: bool = False,
                 response_timeout: float = 15.0):
        self.client = client
        self.download_dir = Path(download_dir)
        self.fetcher = fetcher
        self.strict_integrity = strict_integrity
        self.response_timeout = response_timeout

    async def request_download_info(self, identifier: str) -> DownloadInfo:
        """
        Ask the server how to fetch a file.

        Raises:
            ResponseTimeoutError: no DOWNLOAD_INFO in time
            CommandError: the server answered with ERROR
        """
        return await self.client.request_payload(
            f"download {identifier}",
            MessageType.DOWNLOAD_INFO,
            timeout=self.response_timeout,
        )

    async def download(self, identifier: str,
                       progress_callback: Optional[ProgressCallback] = None,
                       keep_chunks: bool = False) -> DownloadResult:
        """
        Download and rebuild a file.

        Args:
            identifier: File id, title, or file name known to the server
            progress_callback: Called with DownloadProgress as bytes arrive
            keep_chunks: Keep the downloaded chunk files

        Returns:
            DownloadResult describing the rebuilt file
        """
        info = await self.request_download_info(identifier)
        logger.info(f"Downloading {info.title!r}: {info.chunk_count} chunks, "
                    f"{info.total_size:,} bytes")

        title_dir = self.download_dir / safe_file_name(info.title)
        chunks_dir = title_dir / "chunks"
        await aiofiles.os.makedirs(chunks_dir, exist_ok=True)

        progress = DownloadProgress(
            total_chunks=info.chunk_count,
            total_bytes=info.total_size,
            title=info.title,
        )

        def report():
            if progress_callback:
                progress_callback(progress)

        def on_bytes(n: int):
            progress.bytes_downloaded += n
            report()

        fetcher = self.fetcher or HttpChunkFetcher()
        chunks: List[FileChunk] = []
        mismatches: List[int] = []
        source_name = info.file_name or info.title

        try:
            for ref in info.ordered_chunks():
                progress.current_chunk = ref.index
                chunk_path = chunks_dir / f"chunk_{ref.index}.bin"
                logger.debug(f"Fetching chunk {ref.index + 1}/{info.chunk_count}")

                size = await fetcher.fetch(ref.url, chunk_path, on_bytes)

                if size != ref.size:
                    logger.warning(f"Chunk {ref.index} size mismatch: "
                                   f"expected {ref.size:,}, got {size:,}")

                if ref.hash:
                    actual = await file_md5(chunk_path)
                    if actual != ref.hash.lower():
                        message = (f"Chunk {ref.index} hash mismatch: "
                                   f"expected {ref.hash}, got {actual}")
                        if self.strict_integrity:
                            raise IntegrityError(message, details={
                                'index': ref.index, 'expected': ref.hash, 'actual': actual,
                            })
                        logger.warning(message)
                        mismatches.append(ref.index)

                chunks.append(FileChunk(
                    id=ref.id,
                    index=ref.index,
                    size=size,
                    hash=ref.hash or '',
                    source_file_name=source_name,
                    file_id=info.file_id,
                    file_name=chunk_path.name,
                ))
                progress.downloaded_chunks += 1
                report()
        finally:
            if self.fetcher is None:
                await fetcher.close()

        progress.phase = 'merging'
        report()

        manifest = Manifest(
            file_id=info.file_id,
            file_name=source_name,
            title=info.title,
            file_size=info.total_size,
            chunk_size=max((c.size for c in chunks), default=0),
            chunk_count=info.chunk_count,
            chunks=chunks,
        )
        chunker = FileChunker(strict_integrity=self.strict_integrity)
        rebuilt = await chunker.reassemble(
            manifest, chunks_dir, title_dir / safe_file_name(source_name)
        )

        if not keep_chunks:
            shutil.rmtree(chunks_dir)
            logger.debug(f"Removed chunk directory {chunks_dir}")

        progress.phase = 'complete'
        report()

        logger.info(f"Download of {info.title!r} complete: {rebuilt.path}")
        return DownloadResult(
            title=info.title,
            file_id=info.file_id,
            output_path=rebuilt.path,
            size=rebuilt.size,
            expected_size=rebuilt.expected_size,
            chunk_count=info.chunk_count,
            hash_mismatches=mismatches,
            chunks_kept=keep_chunks,
        )

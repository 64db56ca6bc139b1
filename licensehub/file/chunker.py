"""
File Chunker

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                          | Cons                           |
|---------|-------------------------------|--------------------------------|
| 1MB     | Fine-grained progress         | Many blobs per large file      |
| 8MB     | Few blobs, fits upload limits | Coarse progress                |
| 25MB+   | Very few blobs                | Above common blob host limits  |

Decision: 8MB (8,388,608 bytes) by default, configurable
- Chunk blobs are served individually by the blob host
- Large downloads still report progress per chunk and per byte

Chunking Strategy: Fixed-Size
- Deterministic: identical input always yields identical boundaries
- chunk_count = ceil(file_size / chunk_size)
- MD5 per chunk covers exactly the bytes read (the last chunk may be short)
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from ..exceptions import IntegrityError, NotFoundError
from .manifest import FileChunk, Manifest

logger = logging.getLogger(__name__)

# Chunk size: 8MB
CHUNK_SIZE = 8 * 1024 * 1024

# Buffer used when copying blobs into the output file
COPY_BUFFER_SIZE = 1024 * 1024

MANIFEST_FILE_NAME = "manifest.json"


def md5_hex(data: bytes) -> str:
    """MD5 of a byte string as lowercase hex."""
    return hashlib.md5(data).hexdigest()


async def file_md5(path: Path) -> str:
    """MD5 of a whole file as lowercase hex."""
    hasher = hashlib.md5()
    async with aiofiles.open(path, 'rb') as f:
        while True:
            data = await f.read(COPY_BUFFER_SIZE)
            if not data:
                break
            hasher.update(data)
    return hasher.hexdigest()


def chunk_blob_name(source_name: str, index: int) -> str:
    """Blob name for a chunk, e.g. 'game_3.iso.chunk'."""
    path = Path(source_name)
    return f"{path.stem}_{index}{path.suffix}.chunk"


@dataclass
class ReassembledFile:
    """Result of a reassembly."""
    path: Path
    size: int
    expected_size: int
    chunk_count: int

    @property
    def size_matches(self) -> bool:
        return self.size == self.expected_size


class FileChunker:
    """
    Splits files into fixed-size chunks and reassembles them.

    Features:
    - Fixed-size chunks (default 8MB)
    - MD5 hash per chunk
    - Async file I/O
    - Manifest-driven reassembly
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE, strict_integrity: bool = False):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.strict_integrity = strict_integrity

    async def split(self, file_path: Path, chunk_dir: Path,
                    file_id: Optional[str] = None,
                    title: Optional[str] = None,
                    download_base_url: str = "") -> Manifest:
        """
        Split a file into chunk blobs and write its manifest.

        Args:
            file_path: File to split
            chunk_dir: Directory receiving the chunk blobs and manifest.json
            file_id: Groups all chunks of this file (generated if omitted)
            title: Display name (defaults to the file stem)
            download_base_url: Blob store base reference stored in the manifest

        Returns:
            The manifest, already persisted in chunk_dir
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise NotFoundError(f"File not found: {file_path}")

        file_id = file_id or uuid.uuid4().hex
        chunk_dir = Path(chunk_dir)
        await aiofiles.os.makedirs(chunk_dir, exist_ok=True)

        file_size = file_path.stat().st_size
        logger.info(f"Splitting {file_path.name} ({file_size:,} bytes) "
                    f"into chunks of {self.chunk_size:,} bytes")

        chunks = []
        async with aiofiles.open(file_path, 'rb') as f:
            index = 0
            while True:
                data = await f.read(self.chunk_size)
                if not data:
                    break

                blob_name = chunk_blob_name(file_path.name, index)
                async with aiofiles.open(chunk_dir / blob_name, 'wb') as out:
                    await out.write(data)

                chunks.append(FileChunk(
                    id=f"{file_id}_{index}",
                    index=index,
                    size=len(data),
                    hash=md5_hex(data),
                    source_file_name=file_path.name,
                    file_id=file_id,
                    file_name=blob_name,
                ))
                index += 1

        manifest = Manifest(
            file_id=file_id,
            file_name=file_path.name,
            title=title or file_path.stem,
            file_size=file_size,
            chunk_size=self.chunk_size,
            chunk_count=len(chunks),
            chunks=chunks,
            download_base_url=download_base_url,
        )

        async with aiofiles.open(chunk_dir / MANIFEST_FILE_NAME, 'w') as f:
            await f.write(manifest.to_json(indent=2))

        logger.info(f"Split {file_path.name} into {manifest.chunk_count} chunks "
                    f"(file id {file_id})")
        return manifest

    async def reassemble(self, manifest: Manifest, chunk_dir: Path,
                         output_path: Path) -> ReassembledFile:
        """
        Rebuild a file from its chunk blobs, in manifest index order.

        Chunk hashes are not checked here; the consumer verifies them when
        the bytes are fetched.

        Raises:
            NotFoundError: an index has no manifest entry or its blob is missing
            IntegrityError: size mismatch, only when strict_integrity is set
        """
        chunk_dir = Path(chunk_dir)
        output_path = Path(output_path)
        await aiofiles.os.makedirs(output_path.parent, exist_ok=True)

        logger.info(f"Reassembling {manifest.file_name} from "
                    f"{manifest.chunk_count} chunks")

        written = 0
        async with aiofiles.open(output_path, 'wb') as out:
            for i in range(manifest.chunk_count):
                chunk = manifest.get_chunk(i)
                if chunk is None:
                    raise NotFoundError(
                        f"Chunk with index {i} missing from manifest of {manifest.file_id}"
                    )

                blob_path = chunk_dir / chunk.file_name
                if not blob_path.is_file():
                    raise NotFoundError(f"Chunk file not found: {blob_path}")

                async with aiofiles.open(blob_path, 'rb') as blob:
                    while True:
                        data = await blob.read(COPY_BUFFER_SIZE)
                        if not data:
                            break
                        await out.write(data)
                        written += len(data)

        result = ReassembledFile(
            path=output_path,
            size=output_path.stat().st_size,
            expected_size=manifest.file_size,
            chunk_count=manifest.chunk_count,
        )

        if not result.size_matches:
            message = (f"File size mismatch for {output_path.name}: "
                       f"expected {result.expected_size:,}, got {result.size:,}")
            if self.strict_integrity:
                raise IntegrityError(message, details={
                    'expected': result.expected_size, 'actual': result.size,
                })
            logger.warning(message)
        else:
            logger.info(f"Reassembled {output_path} ({written:,} bytes)")

        return result


async def reassemble(manifest_path: Path, output_dir: Path,
                     strict_integrity: bool = False) -> ReassembledFile:
    """
    Reassemble from a manifest file on disk.

    The chunk blobs are expected next to the manifest; the output is written
    to output_dir under the manifest's original file name.
    """
    manifest_path = Path(manifest_path)
    if not manifest_path.is_file():
        raise NotFoundError(f"Manifest not found: {manifest_path}")

    async with aiofiles.open(manifest_path, 'r') as f:
        manifest = Manifest.from_json(await f.read())

    chunker = FileChunker(chunk_size=manifest.chunk_size or CHUNK_SIZE,
                          strict_integrity=strict_integrity)
    return await chunker.reassemble(
        manifest, manifest_path.parent, Path(output_dir) / manifest.file_name
    )

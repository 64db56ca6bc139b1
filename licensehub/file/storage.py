"""
Chunk Storage

Design Decision: Storage Strategy
==================================

Options Considered:
1. Flat directory with all chunk blobs
   - Simple, but blobs of different files mix together

2. One directory per produced file, keyed by file id
   - All blobs of a file live next to their manifest
   - Deleting a file is deleting one directory

3. SQLite blob storage
   - Single file, but harder to serve over HTTP

Decision: One directory per file id
- chunks/<file_id>/ holds the blobs and manifest.json
- The blob host serves files straight out of that directory
- Easy to inspect manually

Storage Layout:
```
data/
├── chunks/
│   └── <file_id>/
│       ├── manifest.json
│       ├── game_0.iso.chunk
│       └── game_1.iso.chunk
└── files/            # Locally reassembled files
```
"""

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..exceptions import NotFoundError
from .chunker import FileChunker, ReassembledFile, MANIFEST_FILE_NAME, CHUNK_SIZE
from .manifest import Manifest

logger = logging.getLogger(__name__)


@dataclass
class StorageStats:
    """Statistics about stored data."""
    file_count: int
    total_chunks: int
    total_bytes: int


class ChunkStorage:
    """
    Producing-side storage for chunked files.

    Provides:
    - Splitting files into a per-file chunk directory
    - Manifest retrieval and lookup by id, title or file name
    - Safe resolution of chunk blob paths for the blob host
    - Local reassembly
    """

    def __init__(self, data_dir: Path, chunk_size: int = CHUNK_SIZE,
                 strict_integrity: bool = False):
        """
        Initialize chunk storage.

        Args:
            data_dir: Root directory for all stored data
            chunk_size: Chunk size used for new files
            strict_integrity: Raise on size mismatch during reassembly
        """
        self.data_dir = Path(data_dir)
        self.chunks_dir = self.data_dir / "chunks"
        self.files_dir = self.data_dir / "files"
        self.chunker = FileChunker(chunk_size=chunk_size,
                                   strict_integrity=strict_integrity)

        # Manifest cache: file_id -> Manifest
        self._manifests: Dict[str, Manifest] = {}

        self._ensure_directories()

    def _ensure_directories(self):
        """Create storage directories if they don't exist."""
        for dir_path in [self.chunks_dir, self.files_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    def file_dir(self, file_id: str) -> Path:
        """Directory holding one file's blobs and manifest."""
        path = (self.chunks_dir / file_id).resolve()
        if path.parent != self.chunks_dir.resolve():
            raise NotFoundError(f"Invalid file id: {file_id}")
        return path

    # === Producing ===

    async def store_file(self, file_path: Path, title: Optional[str] = None,
                         download_base_url: str = "") -> Manifest:
        """
        Split a file into a fresh chunk directory.

        Returns:
            The manifest of the stored file
        """
        file_id = uuid.uuid4().hex
        manifest = await self.chunker.split(
            file_path,
            self.chunks_dir / file_id,
            file_id=file_id,
            title=title,
            download_base_url=download_base_url,
        )

        self._manifests[manifest.file_id] = manifest
        logger.info(f"Stored {manifest.file_name} as {manifest.file_id}")
        return manifest

    # === Lookup ===

    def get_manifest(self, file_id: str) -> Optional[Manifest]:
        """Get the manifest of a stored file, or None."""
        if file_id in self._manifests:
            return self._manifests[file_id]

        try:
            manifest_path = self.file_dir(file_id) / MANIFEST_FILE_NAME
        except NotFoundError:
            return None
        if not manifest_path.is_file():
            return None

        try:
            manifest = Manifest.load(manifest_path)
        except (ValueError, KeyError, TypeError, AttributeError, OSError) as e:
            logger.warning(f"Skipping unreadable manifest {manifest_path}: {e}")
            return None
        self._manifests[file_id] = manifest
        return manifest

    def list_manifests(self) -> List[Manifest]:
        """All stored manifests, oldest first."""
        manifests = []
        for path in sorted(self.chunks_dir.glob(f"*/{MANIFEST_FILE_NAME}")):
            manifest = self.get_manifest(path.parent.name)
            if manifest:
                manifests.append(manifest)
        manifests.sort(key=lambda m: m.created_at)
        return manifests

    def find_manifest(self, identifier: str) -> Optional[Manifest]:
        """
        Find a manifest by file id, title, or file name.

        Exact matches win (file id, then title or file name or stem,
        case-insensitive); otherwise the first title containing the
        identifier is returned.
        """
        identifier = identifier.strip()
        if not identifier:
            return None

        manifest = self.get_manifest(identifier)
        if manifest:
            return manifest

        wanted = identifier.lower()
        manifests = self.list_manifests()
        for manifest in manifests:
            names = {manifest.title.lower(), manifest.file_name.lower(),
                     Path(manifest.file_name).stem.lower()}
            if wanted in names:
                return manifest

        for manifest in manifests:
            if wanted in manifest.title.lower():
                return manifest

        return None

    def chunk_path(self, file_id: str, file_name: str) -> Path:
        """
        Resolve the path of a chunk blob.

        Raises:
            NotFoundError: unknown file, or a name escaping the file directory
        """
        base = self.file_dir(file_id)
        path = (base / file_name).resolve()
        if path.parent != base or path.name == MANIFEST_FILE_NAME:
            raise NotFoundError(f"Invalid chunk name: {file_name}")
        if not path.is_file():
            raise NotFoundError(f"Chunk not found: {file_id}/{file_name}")
        return path

    # === Reassembly ===

    async def reassemble_file(self, file_id: str,
                              output_dir: Optional[Path] = None) -> ReassembledFile:
        """Rebuild a stored file into output_dir (default: data/files)."""
        manifest = self.get_manifest(file_id)
        if manifest is None:
            raise NotFoundError(f"No manifest for file id {file_id}")

        output_dir = Path(output_dir) if output_dir else self.files_dir
        return await self.chunker.reassemble(
            manifest, self.file_dir(file_id), output_dir / manifest.file_name
        )

    # === Stats ===

    def get_stats(self) -> StorageStats:
        """Get storage statistics."""
        manifests = self.list_manifests()
        return StorageStats(
            file_count=len(manifests),
            total_chunks=sum(m.chunk_count for m in manifests),
            total_bytes=sum(m.file_size for m in manifests),
        )

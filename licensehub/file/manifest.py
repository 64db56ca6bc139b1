"""
File Manifest

Design Decision: Manifest Structure
====================================

The manifest is the authoritative description of a chunked file:
- File identification (file id, name, title, size)
- Chunk information (index, size, MD5, blob file name)
- Where the chunk blobs can be fetched from (download_base_url)

Reassembly is driven by the manifest alone: chunk i is the entry whose
`index == i`, never "the i-th file in the directory".

Decision: JSON, stored as manifest.json next to the chunk blobs
- Easy to inspect and debug
- Same format the session protocol already speaks
"""

import json
import time
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional
from pathlib import Path


@dataclass
class FileChunk:
    """Metadata of one chunk (no raw bytes)."""
    id: str  # "{file_id}_{index}"
    index: int
    size: int  # Bytes actually read, last chunk may be short
    hash: str  # MD5 as lowercase hex
    source_file_name: str
    file_id: str
    file_name: str  # Blob name inside the file's chunk directory

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'FileChunk':
        return cls(
            id=data['id'],
            index=data['index'],
            size=data['size'],
            hash=data.get('hash', ''),
            source_file_name=data.get('source_file_name', ''),
            file_id=data.get('file_id', ''),
            file_name=data['file_name'],
        )


@dataclass
class Manifest:
    """
    Complete metadata for a chunked file.

    Tells the consumer:
    - Which chunks to expect (chunk_count, contiguous indices)
    - How to verify each chunk (hash, size)
    - How to reassemble the file (index order)
    """
    # File identification
    file_id: str
    file_name: str
    file_size: int

    # Chunks
    chunk_size: int
    chunk_count: int
    chunks: List[FileChunk]

    # Display name used by the catalog
    title: str = ""

    # Blob store base reference
    download_base_url: str = ""

    # Metadata
    created_at: float = field(default_factory=time.time)

    @property
    def is_contiguous(self) -> bool:
        """True if chunk indices are exactly {0..chunk_count-1}."""
        return sorted(c.index for c in self.chunks) == list(range(self.chunk_count))

    def get_chunk(self, index: int) -> Optional[FileChunk]:
        """Get the chunk whose index matches (not the list position)."""
        for chunk in self.chunks:
            if chunk.index == index:
                return chunk
        return None

    def ordered_chunks(self) -> List[FileChunk]:
        return sorted(self.chunks, key=lambda c: c.index)

    def to_dict(self) -> Dict:
        """Serialize to dictionary."""
        return {
            'file_id': self.file_id,
            'file_name': self.file_name,
            'title': self.title,
            'file_size': self.file_size,
            'chunk_size': self.chunk_size,
            'chunk_count': self.chunk_count,
            'chunks': [c.to_dict() for c in self.chunks],
            'download_base_url': self.download_base_url,
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Manifest':
        """Deserialize from dictionary."""
        chunks = [FileChunk.from_dict(c) for c in data['chunks']]
        return cls(
            file_id=data['file_id'],
            file_name=data['file_name'],
            title=data.get('title') or Path(data['file_name']).stem,
            file_size=data['file_size'],
            chunk_size=data['chunk_size'],
            chunk_count=data.get('chunk_count', len(chunks)),
            chunks=chunks,
            download_base_url=data.get('download_base_url', ''),
            created_at=data.get('created_at', time.time()),
        )

    def to_json(self, indent: int = None) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))

    @classmethod
    def load(cls, path: Path) -> 'Manifest':
        """Load manifest from a file."""
        with open(path, 'r') as f:
            return cls.from_json(f.read())

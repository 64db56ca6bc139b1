"""
File Module - Chunking, Manifests, and Storage

Splits files into fixed-size MD5-verified chunks and rebuilds them from a manifest.
"""

from .manifest import FileChunk, Manifest
from .chunker import FileChunker, ReassembledFile, CHUNK_SIZE, reassemble
from .storage import ChunkStorage, StorageStats
from .blobstore import BlobStore, LocalBlobStore

__all__ = [
    'FileChunk',
    'Manifest',
    'FileChunker',
    'ReassembledFile',
    'CHUNK_SIZE',
    'reassemble',
    'ChunkStorage',
    'StorageStats',
    'BlobStore',
    'LocalBlobStore',
]

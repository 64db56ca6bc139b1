"""
Client Module - Protocol Driver and Downloads

Connects to the license server, sends commands, and downloads chunked files.
"""

from .driver import LicenseClient
from .transfer import (
    TransferOrchestrator, ChunkFetcher, HttpChunkFetcher,
    DownloadProgress, DownloadResult,
)

__all__ = [
    'LicenseClient',
    'TransferOrchestrator',
    'ChunkFetcher',
    'HttpChunkFetcher',
    'DownloadProgress',
    'DownloadResult',
]

"""
Protocol Module - Session Messages and Line Transport

Newline-delimited JSON messages exchanged between clients and the license server.
"""

from .messages import (
    Message, MessageType, SERVER_SENDER, encode, decode,
)
from .payloads import (
    PAYLOAD_SCHEMAS, DownloadInfo, ChunkRef, ListResponse, ListItem,
    InfoResponse, StatusResponse, decode_payload, create_response,
)
from .connection import LineConnection, open_line_connection

__all__ = [
    'Message',
    'MessageType',
    'SERVER_SENDER',
    'encode',
    'decode',
    'PAYLOAD_SCHEMAS',
    'DownloadInfo',
    'ChunkRef',
    'ListResponse',
    'ListItem',
    'InfoResponse',
    'StatusResponse',
    'decode_payload',
    'create_response',
    'LineConnection',
    'open_line_connection',
]

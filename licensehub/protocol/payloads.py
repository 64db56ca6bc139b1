"""
Typed Payloads

Response messages carry a JSON document in their `content` field. Each
response type has exactly one schema, registered in PAYLOAD_SCHEMAS, so
both sides decode with the same model instead of probing the JSON shape.

JSON keys are camelCase on the wire; Python attributes are snake_case.
"""

from datetime import datetime
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from ..exceptions import ProtocolError
from .messages import Message, MessageType


class PayloadModel(BaseModel):
    """Base for wire payloads."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_content(self) -> str:
        return self.model_dump_json(by_alias=True)


# === Download ===

class ChunkRef(PayloadModel):
    """One fetchable chunk of a download."""
    index: int
    id: str
    size: int
    url: str
    hash: Optional[str] = None


class DownloadInfo(PayloadModel):
    """Everything a client needs to fetch and rebuild one file."""
    item_id: str
    title: str
    file_id: str
    file_name: str = ""
    chunk_count: int
    chunks: List[ChunkRef]
    total_size: int

    def ordered_chunks(self) -> List[ChunkRef]:
        return sorted(self.chunks, key=lambda c: c.index)


# === List ===

class ListItem(PayloadModel):
    file_id: str
    title: str
    file_name: str
    size: int
    chunk_count: int
    created_at: datetime


class ListResponse(PayloadModel):
    items: List[ListItem]
    total_count: int


# === Info ===

class LicenseInfo(PayloadModel):
    username: str
    license_key: str
    expiration_date: datetime
    is_active: bool
    first_login: datetime
    last_login: datetime
    ip_address: str
    session_id: Optional[str] = None
    rate_limit: int


class ConnectionInfo(PayloadModel):
    server_address: str
    connected_since: datetime


class InfoResponse(PayloadModel):
    license_info: LicenseInfo
    connection_info: ConnectionInfo


# === Status ===

class ServerStatus(PayloadModel):
    version: str
    uptime_seconds: float
    connected_users: int
    total_users: int
    active_licenses: int
    expired_licenses: int


class ConnectionStatus(PayloadModel):
    is_connected: bool
    connected_since: datetime
    bytes_sent: int
    bytes_received: int


class StatusResponse(PayloadModel):
    server_status: ServerStatus
    connection_status: ConnectionStatus


# === Registry ===

PAYLOAD_SCHEMAS: Dict[MessageType, Type[PayloadModel]] = {
    MessageType.DOWNLOAD_INFO: DownloadInfo,
    MessageType.LIST_RESPONSE: ListResponse,
    MessageType.INFO_RESPONSE: InfoResponse,
    MessageType.STATUS_RESPONSE: StatusResponse,
}

_TYPES_BY_SCHEMA = {schema: msg_type for msg_type, schema in PAYLOAD_SCHEMAS.items()}


def decode_payload(message: Message) -> PayloadModel:
    """
    Decode the typed payload of a response message.

    Raises:
        ProtocolError: no schema for this type, or content does not validate
    """
    schema = PAYLOAD_SCHEMAS.get(message.type)
    if schema is None:
        raise ProtocolError(f"No payload schema for message type {message.type.value}")

    try:
        return schema.model_validate_json(message.content)
    except ValidationError as e:
        raise ProtocolError(
            f"Invalid {message.type.value} payload",
            details={'errors': e.errors(include_url=False)},
        )


def create_response(payload: PayloadModel) -> Message:
    """Wrap a payload in a message of its registered type."""
    msg_type = _TYPES_BY_SCHEMA.get(type(payload))
    if msg_type is None:
        raise ProtocolError(f"{type(payload).__name__} is not a registered payload")
    return Message(type=msg_type, content=payload.to_content())

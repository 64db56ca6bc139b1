"""
Session Protocol Messages

Design Decision: Framing
========================

Options Considered:
1. Length-prefixed binary frames
   - Robust against any payload content
   - Not inspectable with telnet/netcat

2. Newline-delimited JSON
   - One message per line, trivially debuggable
   - Payload must never contain a raw newline

Decision: Newline-delimited JSON
- json.dumps escapes newlines inside strings, so a serialized message
  never contains a raw newline and the line is the frame
- Every message carries exactly four fields

Wire Format:
```
{"type": "AUTH", "content": "...", "sender": "alice", "timestamp": "2025-01-01T12:00:00+00:00"}\\n
```

`content` is a string. For AUTH and the *_RESPONSE / DOWNLOAD_INFO types it
holds a JSON document of its own (see payloads.py).
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Union

from ..exceptions import ProtocolError

SERVER_SENDER = "Server"

FIELDS = ('type', 'content', 'sender', 'timestamp')


class MessageType(Enum):
    """Session protocol message types."""
    # Control
    AUTH = "AUTH"
    COMMAND = "COMMAND"
    DISCONNECT = "DISCONNECT"
    NOTIFICATION = "NOTIFICATION"

    # Command responses
    DOWNLOAD_INFO = "DOWNLOAD_INFO"
    LIST_RESPONSE = "LIST_RESPONSE"
    INFO_RESPONSE = "INFO_RESPONSE"
    STATUS_RESPONSE = "STATUS_RESPONSE"
    ERROR = "ERROR"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    """
    A session protocol message.

    Immutable once constructed. One Message is one line on the wire.
    """
    type: MessageType
    content: str = ""
    sender: str = SERVER_SENDER
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            'type': self.type.value,
            'content': self.content,
            'sender': self.sender,
            'timestamp': self.timestamp.isoformat(),
        }

    def to_line(self) -> str:
        """Serialize to a single newline-terminated JSON line."""
        return json.dumps(self.to_dict()) + "\n"

    @classmethod
    def from_line(cls, line: Union[str, bytes]) -> 'Message':
        """Parse one line. Raises ProtocolError if it is not a valid message."""
        if isinstance(line, bytes):
            try:
                line = line.decode('utf-8')
            except UnicodeDecodeError as e:
                raise ProtocolError(f"Message is not valid UTF-8: {e}")

        # Stray framing bytes have been seen in front of messages
        line = line.strip().lstrip('?')
        if not line:
            raise ProtocolError("Empty message")

        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Malformed message JSON: {e}")

        if not isinstance(data, dict):
            raise ProtocolError("Message must be a JSON object")

        missing = [name for name in FIELDS if name not in data]
        if missing:
            raise ProtocolError(f"Message is missing field(s): {', '.join(missing)}")

        try:
            msg_type = MessageType(data['type'])
        except ValueError:
            raise ProtocolError(f"Unknown message type: {data['type']!r}")

        content = data['content']
        sender = data['sender']
        if not isinstance(content, str) or not isinstance(sender, str):
            raise ProtocolError("Message content and sender must be strings")

        return cls(
            type=msg_type,
            content=content,
            sender=sender,
            timestamp=_parse_timestamp(data['timestamp']),
        )


def _parse_timestamp(value) -> datetime:
    if not isinstance(value, str):
        raise ProtocolError(f"Invalid timestamp: {value!r}")
    # Python < 3.11 does not accept a trailing 'Z'
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ProtocolError(f"Invalid timestamp: {value!r}")


def encode(message: Message) -> str:
    """Encode a message as one wire line (including the trailing newline)."""
    return message.to_line()


def decode(line: Union[str, bytes]) -> Message:
    """Decode one wire line into a Message."""
    return Message.from_line(line)


# === Message constructors ===

def create_auth(username: str, license_key: str) -> Message:
    content = json.dumps({'username': username, 'licenseKey': license_key})
    return Message(type=MessageType.AUTH, content=content, sender=username)


def create_auth_success() -> Message:
    return Message(type=MessageType.AUTH, content="Authentication successful")


def create_command(text: str, sender: str) -> Message:
    return Message(type=MessageType.COMMAND, content=text, sender=sender)


def create_disconnect(reason: str, sender: str = SERVER_SENDER) -> Message:
    return Message(type=MessageType.DISCONNECT, content=reason, sender=sender)


def create_notification(content: str) -> Message:
    return Message(type=MessageType.NOTIFICATION, content=content)


def create_error(content: str) -> Message:
    return Message(type=MessageType.ERROR, content=content)


def parse_auth(message: Message) -> tuple:
    """
    Extract (username, license_key) from an AUTH message.

    Raises:
        ProtocolError: content is not the expected JSON object
    """
    try:
        data = json.loads(message.content)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed authentication data: {e}")

    if not isinstance(data, dict):
        raise ProtocolError("Authentication data must be a JSON object")

    username = data.get('username')
    license_key = data.get('licenseKey')
    if not isinstance(username, str) or not isinstance(license_key, str):
        raise ProtocolError("Authentication data requires username and licenseKey")

    return username, license_key

"""
Exception classes for licensehub.

All exceptions inherit from LicenseHubError and carry a human-readable
message (the "reason" shown to users) plus optional structured details.
"""

from typing import Optional


class LicenseHubError(Exception):
    """Base exception for all licensehub errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ProtocolError(LicenseHubError):
    """Malformed frame, bad JSON, bad payload, or a message type not allowed in the current state."""

    pass


class AuthError(LicenseHubError):
    """Authentication rejected (bad license format, expired license, server refusal)."""

    pass


class SessionConflictError(LicenseHubError):
    """A license key is already held by another live session.

    The authority resolves conflicts by evicting the older session, so this
    is never raised by it.
    """

    pass


class TransportError(LicenseHubError, ConnectionError):
    """Socket or HTTP I/O failure, or sending while not connected."""

    pass


class ResponseTimeoutError(LicenseHubError, TimeoutError):
    """No answer arrived within the allowed time."""

    pass


class CommandError(LicenseHubError):
    """The server answered a command with an ERROR message."""

    pass


class IntegrityError(LicenseHubError):
    """Chunk hash or reassembled size does not match the manifest."""

    pass


class NotFoundError(LicenseHubError, FileNotFoundError):
    """A manifest, manifest entry, or chunk blob is missing."""

    pass

"""
Server Module - License-Gated Session Server

Authenticates clients by license key and answers their commands.
"""

from .users import User, is_valid_license_key, generate_license_key
from .session import ClientSession, SessionState
from .authority import SessionAuthority
from .commands import CommandHandler
from .server import LicenseServer

__all__ = [
    'User',
    'is_valid_license_key',
    'generate_license_key',
    'ClientSession',
    'SessionState',
    'SessionAuthority',
    'CommandHandler',
    'LicenseServer',
]

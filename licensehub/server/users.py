"""
License Users

A User is the license record behind a license key. The key is the identity;
the username is only a display name and may change on every login.

License Key Format:
```
LICS-XXXX-XXXX-XXXXX
```
Exactly 20 characters with the "LICS-" prefix. Only the length and the
prefix are checked; generated keys use upper-case letters and digits.
"""

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

LICENSE_PREFIX = "LICS-"
LICENSE_KEY_LENGTH = 20

DEFAULT_LICENSE_DAYS = 30
DEFAULT_RATE_LIMIT = 100

KEY_ALPHABET = string.ascii_uppercase + string.digits


def is_valid_license_key(key: Optional[str]) -> bool:
    """True if the key has the license format (length and prefix)."""
    return (
        isinstance(key, str)
        and len(key) == LICENSE_KEY_LENGTH
        and key.startswith(LICENSE_PREFIX)
    )


def generate_license_key() -> str:
    """Generate a random well-formed license key."""
    def group(n: int) -> str:
        return ''.join(secrets.choice(KEY_ALPHABET) for _ in range(n))

    return f"{LICENSE_PREFIX}{group(4)}-{group(4)}-{group(5)}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    # Stored values are UTC; older rows may lack the offset
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class User:
    """License record, one per license key."""
    username: str
    license_key: str
    ip_address: str
    first_login: datetime
    last_login: datetime
    license_expiration: datetime
    rate_limit: int = DEFAULT_RATE_LIMIT
    is_online: bool = False
    active_session_id: Optional[str] = None

    @classmethod
    def create(cls, username: str, license_key: str, ip_address: str,
               license_days: int = DEFAULT_LICENSE_DAYS,
               rate_limit: int = DEFAULT_RATE_LIMIT,
               now: Optional[datetime] = None) -> 'User':
        """New user on first login with an unseen key."""
        now = now or utc_now()
        return cls(
            username=username,
            license_key=license_key,
            ip_address=ip_address,
            first_login=now,
            last_login=now,
            license_expiration=now + timedelta(days=license_days),
            rate_limit=rate_limit,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.license_expiration < (now or utc_now())

    def extend(self, days: int):
        self.license_expiration += timedelta(days=days)

    def to_dict(self) -> Dict:
        return {
            'username': self.username,
            'license_key': self.license_key,
            'ip_address': self.ip_address,
            'first_login': self.first_login.isoformat(),
            'last_login': self.last_login.isoformat(),
            'license_expiration': self.license_expiration.isoformat(),
            'rate_limit': self.rate_limit,
            'is_online': self.is_online,
            'active_session_id': self.active_session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'User':
        return cls(
            username=data['username'],
            license_key=data['license_key'],
            ip_address=data.get('ip_address') or '',
            first_login=_parse_datetime(data['first_login']),
            last_login=_parse_datetime(data['last_login']),
            license_expiration=_parse_datetime(data['license_expiration']),
            rate_limit=int(data.get('rate_limit', DEFAULT_RATE_LIMIT)),
            is_online=bool(data.get('is_online', False)),
            active_session_id=data.get('active_session_id'),
        )

"""
SQLite User Store

Design Decision: Why SQLite?
============================

Options Considered:
1. SQLite - Embedded, no server, ACID compliant
2. JSON file - Simple, but a crash mid-write loses every record
3. PostgreSQL/MySQL - Overkill, requires server

Decision: SQLite with aiosqlite
- Zero configuration
- A wholesale rewrite runs in one transaction, so readers never see
  a half-written user list
- Single file, easy to backup
- Async support via aiosqlite

The store works on plain row dictionaries (see User.to_dict/from_dict);
the authority owns the User objects.

Tables:
- users: one row per license key
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

USER_COLUMNS = (
    'license_key', 'username', 'ip_address', 'first_login', 'last_login',
    'license_expiration', 'rate_limit', 'is_online', 'active_session_id',
)


class UserStore:
    """
    SQLite persistence for license users.

    Loaded wholesale at startup, rewritten wholesale after each mutation.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self):
        """Open database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._init_schema()

        logger.info(f"User store connected: {self.db_path}")

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _init_schema(self):
        """Initialize database schema."""
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                license_key TEXT PRIMARY KEY,
                username TEXT NOT NULL,
                ip_address TEXT,
                first_login TEXT NOT NULL,
                last_login TEXT NOT NULL,
                license_expiration TEXT NOT NULL,
                rate_limit INTEGER DEFAULT 100,
                is_online INTEGER DEFAULT 0,
                active_session_id TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_users_username ON users(username);
        """)
        await self._connection.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        await self._connection.commit()

    # === Users ===

    async def load_users(self) -> List[Dict]:
        """
        Load every user row.

        Presence does not survive a restart: every row comes back offline
        with no session bound.
        """
        async with self._connection.execute(
            "SELECT * FROM users ORDER BY first_login"
        ) as cursor:
            rows = await cursor.fetchall()

        users = []
        for row in rows:
            data = dict(row)
            data['is_online'] = False
            data['active_session_id'] = None
            users.append(data)

        logger.info(f"Loaded {len(users)} users")
        return users

    async def save_users(self, users: Iterable[Dict]):
        """Replace all stored rows with the given users in one transaction."""
        rows = [tuple(self._column_value(u, c) for c in USER_COLUMNS) for u in users]
        placeholders = ", ".join("?" for _ in USER_COLUMNS)

        try:
            await self._connection.execute("DELETE FROM users")
            await self._connection.executemany(
                f"INSERT INTO users ({', '.join(USER_COLUMNS)}) VALUES ({placeholders})",
                rows
            )
            await self._connection.commit()
        except aiosqlite.Error:
            await self._connection.rollback()
            raise

        logger.debug(f"Saved {len(rows)} users")

    async def get_user(self, license_key: str) -> Optional[Dict]:
        """Get one stored user row."""
        async with self._connection.execute(
            "SELECT * FROM users WHERE license_key = ?", (license_key,)
        ) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None

    @staticmethod
    def _column_value(user: Dict, column: str):
        value = user.get(column)
        if column == 'is_online':
            return int(bool(value))
        return value

"""
Session Authority

Design Decision: Shared State
=============================

The authority owns two registries that change together on every login and
logout: live sessions (session_id -> ClientSession) and license users
(license_key -> User).

Options Considered:
1. One lock per registry
   - More parallelism, but login touches both and needs a lock order
2. One asyncio.Lock for both, never held across network I/O
   - Trivially consistent, login/logout are short

Decision: One lock
- Registry mutations and user-store writes happen under it
- Sends (eviction notices, broadcasts, notifications) happen after
  releasing it, from a snapshot taken under it
- Fan-out sends run concurrently, so one slow peer delays nobody else

Design Decision: Concurrent Logins With One Key
===============================================

The newest session wins. The session previously holding the key is sent
a DISCONNECT, closed, and unbound. A SessionConflictError is never raised.

The AUTH reply is the first line an authenticated session receives. It is
written right after the lock is released, before anything can await, so a
broadcast racing the login always lands behind it.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from ..exceptions import AuthError, TransportError
from ..protocol.messages import Message, MessageType, create_auth_success
from ..storage.database import UserStore
from .session import ClientSession
from .users import (
    User, is_valid_license_key, utc_now, DEFAULT_LICENSE_DAYS, DEFAULT_RATE_LIMIT,
)

logger = logging.getLogger(__name__)

# Reasons sent to clients
REASON_INVALID_KEY = "Invalid license key"
REASON_EXPIRED = "License expired"
REASON_EVICTED = "Another session started with your license."
REASON_LICENSE_EXPIRED = "Your license expired."
REASON_KICKED = "You have been disconnected by an administrator."
REASON_SHUTDOWN = "Server is shutting down."

# Callback types
SessionCallback = Callable[[ClientSession], None]
CommandCallback = Callable[[ClientSession, str], None]


async def _gather(coros, action: str) -> list:
    """Run coroutines concurrently. A raised exception is logged and returned."""
    results = await asyncio.gather(*coros, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error(f"{action} failed: {result}")
    return results


class SessionAuthority:
    """
    Authenticates sessions and tracks who is online.

    Invariants:
    - At most one User per license key
    - At most one live session bound to a license key
    - Every user mutation is persisted before the call returns
    """

    def __init__(self, store: Optional[UserStore] = None,
                 license_days: int = DEFAULT_LICENSE_DAYS,
                 rate_limit: int = DEFAULT_RATE_LIMIT):
        self.store = store
        self.license_days = license_days
        self.rate_limit = rate_limit

        self._lock = asyncio.Lock()
        self._sessions: Dict[str, ClientSession] = {}
        self._users: Dict[str, User] = {}

        # Event callbacks
        self._connected_callbacks: List[SessionCallback] = []
        self._disconnected_callbacks: List[SessionCallback] = []
        self._command_callbacks: List[CommandCallback] = []

    # === Events ===

    def on_client_connected(self, callback: SessionCallback):
        """Register a callback fired after a session authenticates."""
        self._connected_callbacks.append(callback)

    def on_client_disconnected(self, callback: SessionCallback):
        """Register a callback fired once an authenticated session is gone."""
        self._disconnected_callbacks.append(callback)

    def on_command(self, callback: CommandCallback):
        """Register a callback fired for every command a session sends."""
        self._command_callbacks.append(callback)

    def notify_command(self, session: ClientSession, text: str):
        self._fire(self._command_callbacks, session, text)

    def _fire(self, callbacks: List[Callable], *args):
        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    # === Persistence ===

    async def load(self):
        """Load users from the store. Everyone starts offline."""
        if self.store is None:
            return
        rows = await self.store.load_users()
        async with self._lock:
            self._users = {row['license_key']: User.from_dict(row) for row in rows}
        logger.info(f"Authority loaded {len(self._users)} users")

    async def save(self):
        """Persist all users."""
        async with self._lock:
            await self._save()

    async def _save(self):
        # Caller holds the lock
        if self.store is None:
            return
        await self.store.save_users([u.to_dict() for u in self._users.values()])

    # === Authentication ===

    async def authenticate(self, session: ClientSession, username: str,
                           license_key: str) -> bool:
        """
        Authenticate a session, bind it to the license and send the AUTH reply.

        Returns:
            True on success

        Raises:
            AuthError: unknown malformed key, or expired license
            TransportError: the AUTH reply could not be sent
        """
        evicted: Optional[ClientSession] = None
        now = utc_now()

        async with self._lock:
            user = self._users.get(license_key)

            if user is None:
                if not is_valid_license_key(license_key):
                    logger.info(f"Rejected {username!r} from {session.remote_address}: "
                                f"invalid license key")
                    raise AuthError(REASON_INVALID_KEY)

                user = User.create(
                    username=username,
                    license_key=license_key,
                    ip_address=session.ip_address,
                    license_days=self.license_days,
                    rate_limit=self.rate_limit,
                    now=now,
                )
                self._users[license_key] = user
                logger.info(f"New license user {username!r} "
                            f"(expires {user.license_expiration:%Y-%m-%d})")
            else:
                if user.is_expired(now):
                    logger.info(f"Rejected {username!r}: license expired "
                                f"{user.license_expiration:%Y-%m-%d}")
                    raise AuthError(REASON_EXPIRED)

                previous = user.active_session_id
                if previous and previous != session.session_id:
                    evicted = self._sessions.get(previous)

                user.username = username
                user.ip_address = session.ip_address
                user.last_login = now

            user.is_online = True
            user.active_session_id = session.session_id
            session.mark_authenticated(username, license_key)
            self._sessions[session.session_id] = session

            await self._save()

        try:
            # Nothing has awaited since the lock was released
            await session.send(create_auth_success())
        finally:
            if evicted is not None:
                logger.info(f"Evicting session {evicted.session_id} of {username!r}: "
                            f"new login from {session.remote_address}")
                await evicted.close(REASON_EVICTED)
                await self.release(evicted)

        logger.info(f"Authenticated {username!r} from {session.remote_address}")
        self._fire(self._connected_callbacks, session)
        return True

    async def release(self, session: ClientSession):
        """
        Forget a session and mark its user offline if still bound to it.

        Safe to call more than once; callbacks fire only the first time.
        """
        async with self._lock:
            registered = self._sessions.pop(session.session_id, None) is not None

            user = self._users.get(session.license_key) if session.license_key else None
            if user is not None and user.active_session_id == session.session_id:
                user.is_online = False
                user.active_session_id = None
                await self._save()

        if registered:
            logger.info(f"{session.username!r} disconnected ({session.remote_address})")
            self._fire(self._disconnected_callbacks, session)

    # === Messaging ===

    async def broadcast(self, content: str,
                        msg_type: MessageType = MessageType.NOTIFICATION) -> int:
        """
        Send a message to every authenticated session.

        Returns:
            Number of sessions the message was delivered to
        """
        async with self._lock:
            targets = [s for s in self._sessions.values() if s.is_authenticated]

        message = Message(type=msg_type, content=content)
        results = await _gather(
            (self._deliver(session, message) for session in targets), "Broadcast"
        )
        delivered = sum(1 for r in results if r is True)

        logger.info(f"Broadcast delivered to {delivered}/{len(targets)} sessions")
        return delivered

    async def _deliver(self, session: ClientSession, message: Message) -> bool:
        try:
            await session.send(message)
        except TransportError as e:
            logger.warning(f"Broadcast to {session.username!r} failed: {e}")
            return False
        return True

    async def send_to(self, session_id: str, content: str,
                      msg_type: MessageType = MessageType.NOTIFICATION) -> bool:
        """Send a message to one session. Unknown sessions are not an error."""
        async with self._lock:
            session = self._sessions.get(session_id)

        if session is None:
            logger.debug(f"send_to: no session {session_id}")
            return False

        try:
            await session.send(Message(type=msg_type, content=content))
        except TransportError as e:
            logger.warning(f"Send to {session.username!r} failed: {e}")
            return False
        return True

    # === Disconnects ===

    async def disconnect(self, session_id: str, reason: str) -> bool:
        """
        Disconnect one session with a reason.

        Returns:
            True if the session was live, False if unknown or already gone
        """
        async with self._lock:
            session = self._sessions.get(session_id)

        if session is None:
            logger.debug(f"disconnect: no session {session_id}")
            return False

        closed = await session.close(reason)
        await self.release(session)
        return closed

    async def disconnect_all(self, reason: str = REASON_SHUTDOWN) -> int:
        """Disconnect every session. Returns how many were closed."""
        async with self._lock:
            session_ids = list(self._sessions)

        results = await _gather(
            (self.disconnect(sid, reason) for sid in session_ids), "Disconnect"
        )
        return sum(1 for r in results if r is True)

    async def sweep(self) -> List[str]:
        """
        Disconnect every online user whose license has expired.

        Returns:
            Session ids that were disconnected
        """
        now = utc_now()
        async with self._lock:
            expired = [
                u.active_session_id for u in self._users.values()
                if u.is_online and u.active_session_id and u.is_expired(now)
            ]

        results = await _gather(
            (self.disconnect(sid, REASON_LICENSE_EXPIRED) for sid in expired),
            "Expiration disconnect",
        )
        evicted = [sid for sid, r in zip(expired, results) if r is True]

        if evicted:
            logger.info(f"Expiration sweep disconnected {len(evicted)} sessions")
        else:
            logger.debug("Expiration sweep: no expired sessions")
        return evicted

    # === Licenses ===

    async def extend_license(self, license_key: str, days: int) -> bool:
        """
        Extend a license by a number of days and notify its holder.

        Returns:
            False if the license key is unknown
        """
        async with self._lock:
            user = self._users.get(license_key)
            if user is None:
                return False
            user.extend(days)
            await self._save()
            session_id = user.active_session_id if user.is_online else None
            new_expiration = user.license_expiration

        logger.info(f"Extended license of {user.username!r} by {days} days "
                    f"(now expires {new_expiration:%Y-%m-%d %H:%M})")

        if session_id:
            await self.send_to(
                session_id,
                f"Your license has been extended by {days} days. "
                f"New expiration date: {new_expiration:%Y-%m-%d %H:%M} UTC",
            )
        return True

    # === Queries ===

    def get_online_users(self) -> List[User]:
        return [u for u in self._users.values() if u.is_online]

    def get_all_users(self) -> List[User]:
        return list(self._users.values())

    def get_user(self, license_key: str) -> Optional[User]:
        return self._users.get(license_key)

    def get_session(self, session_id: str) -> Optional[ClientSession]:
        return self._sessions.get(session_id)

    def find_online_session(self, username: str) -> Optional[ClientSession]:
        """Find the live session of a user by name (case-insensitive)."""
        wanted = username.lower()
        for session in self._sessions.values():
            if session.is_authenticated and (session.username or '').lower() == wanted:
                return session
        return None

    # === Admin ===

    async def kick(self, username: str, reason: str = REASON_KICKED) -> bool:
        """Disconnect a user by name."""
        session = self.find_online_session(username)
        if session is None:
            return False
        return await self.disconnect(session.session_id, reason)

    async def message_user(self, username: str, content: str) -> bool:
        """Send a notification to a user by name."""
        session = self.find_online_session(username)
        if session is None:
            return False
        return await self.send_to(session.session_id, content)

    def get_stats(self) -> dict:
        """Get authority statistics."""
        now = utc_now()
        users = list(self._users.values())
        expired = sum(1 for u in users if u.is_expired(now))
        return {
            'connected_users': len(self._sessions),
            'online_users': sum(1 for u in users if u.is_online),
            'total_users': len(users),
            'active_licenses': len(users) - expired,
            'expired_licenses': expired,
        }

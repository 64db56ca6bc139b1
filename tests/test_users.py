"""
Tests for license users and the SQLite user store.

License format invariant: a key is valid iff it has 20 characters and
starts with "LICS-".
"""

import asyncio
from datetime import datetime, timedelta, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from licensehub.server.users import (
    User, generate_license_key, is_valid_license_key,
    DEFAULT_RATE_LIMIT, LICENSE_KEY_LENGTH, LICENSE_PREFIX,
)
from licensehub.storage.database import UserStore


class TestLicenseFormat:

    @given(key=st.text(max_size=40))
    @settings(max_examples=300)
    def test_any_string(self, key):
        expected = len(key) == 20 and key.startswith("LICS-")
        assert is_valid_license_key(key) == expected

    @given(suffix=st.text(min_size=15, max_size=15))
    def test_prefixed_twenty_chars_are_valid(self, suffix):
        assert is_valid_license_key(LICENSE_PREFIX + suffix)

    def test_near_misses(self):
        assert not is_valid_license_key("LICS-AAAA-BBBB-CCCC")
        assert not is_valid_license_key("LICS-AAAA-BBBB-CCCCCC")
        assert not is_valid_license_key("lics-AAAA-BBBB-CCCCC")
        assert not is_valid_license_key("")
        assert not is_valid_license_key(None)

    def test_generated_keys_are_valid(self):
        keys = {generate_license_key() for _ in range(50)}

        assert len(keys) == 50
        for key in keys:
            assert len(key) == LICENSE_KEY_LENGTH
            assert is_valid_license_key(key)
            assert key[5:].replace("-", "").isalnum()
            assert key[5:].replace("-", "").upper() == key[5:].replace("-", "")


class TestUser:

    def test_create_defaults(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)

        user = User.create("alice", "LICS-AAAA-BBBB-CCCCC", "10.0.0.1", now=now)

        assert user.first_login == user.last_login == now
        assert user.license_expiration == now + timedelta(days=30)
        assert user.rate_limit == DEFAULT_RATE_LIMIT
        assert not user.is_online
        assert user.active_session_id is None

    def test_expiry_and_extend(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        user = User.create("alice", "LICS-AAAA-BBBB-CCCCC", "", license_days=1, now=now)

        assert not user.is_expired(now)
        assert user.is_expired(now + timedelta(days=2))

        user.extend(5)
        assert not user.is_expired(now + timedelta(days=2))

    def test_dict_round_trip(self):
        user = User.create("alice", "LICS-AAAA-BBBB-CCCCC", "10.0.0.1")
        user.is_online = True
        user.active_session_id = "s1"

        assert User.from_dict(user.to_dict()) == user

    def test_naive_timestamps_are_utc(self):
        data = User.create("a", "LICS-AAAA-BBBB-CCCCC", "").to_dict()
        data["license_expiration"] = "2030-01-01T00:00:00"

        user = User.from_dict(data)

        assert user.license_expiration == datetime(2030, 1, 1, tzinfo=timezone.utc)


class TestUserStore:

    def _users(self):
        alice = User.create("alice", "LICS-AAAA-BBBB-CCCCC", "10.0.0.1")
        alice.is_online = True
        alice.active_session_id = "session-1"
        bob = User.create("bob", "LICS-BBBB-CCCC-DDDDD", "10.0.0.2")
        return [alice, bob]

    def test_save_and_load(self, tmp_path):
        async def run():
            store = UserStore(tmp_path / "users.db")
            await store.connect()
            await store.save_users([u.to_dict() for u in self._users()])
            await store.close()

            store = UserStore(tmp_path / "users.db")
            await store.connect()
            rows = await store.load_users()
            await store.close()
            return rows

        rows = asyncio.run(run())
        users = {row["license_key"]: User.from_dict(row) for row in rows}

        assert set(users) == {"LICS-AAAA-BBBB-CCCCC", "LICS-BBBB-CCCC-DDDDD"}
        assert users["LICS-AAAA-BBBB-CCCCC"].username == "alice"
        assert users["LICS-AAAA-BBBB-CCCCC"].ip_address == "10.0.0.1"

    def test_everyone_loads_offline(self, tmp_path):
        async def run():
            store = UserStore(tmp_path / "users.db")
            await store.connect()
            await store.save_users([u.to_dict() for u in self._users()])
            stored = await store.get_user("LICS-AAAA-BBBB-CCCCC")
            rows = await store.load_users()
            await store.close()
            return stored, rows

        stored, rows = asyncio.run(run())

        assert stored["is_online"] == 1
        assert stored["active_session_id"] == "session-1"
        assert all(row["is_online"] is False for row in rows)
        assert all(row["active_session_id"] is None for row in rows)

    def test_save_replaces_all_rows(self, tmp_path):
        async def run():
            store = UserStore(tmp_path / "users.db")
            await store.connect()
            await store.save_users([u.to_dict() for u in self._users()])
            await store.save_users([self._users()[1].to_dict()])
            rows = await store.load_users()
            await store.close()
            return rows

        rows = asyncio.run(run())

        assert [row["username"] for row in rows] == ["bob"]

    def test_empty_store(self, tmp_path):
        async def run():
            store = UserStore(tmp_path / "nested" / "users.db")
            await store.connect()
            rows = await store.load_users()
            await store.close()
            return rows

        assert asyncio.run(run()) == []

"""Tests for the offline CLI commands."""

import asyncio

import pytest
from click.testing import CliRunner

from licensehub.cli import cli, format_size
from licensehub.file.storage import ChunkStorage
from licensehub.server.authority import SessionAuthority
from licensehub.server.users import is_valid_license_key
from licensehub.storage.database import UserStore

from helpers import ALICE_KEY, make_session


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LICENSEHUB_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LICENSEHUB_CHUNK_SIZE", "64")
    return CliRunner()


def _seed_user(data_dir):
    async def run():
        store = UserStore(data_dir / "users.db")
        await store.connect()
        authority = SessionAuthority(store)
        await authority.authenticate(make_session(), "alice", ALICE_KEY)
        await store.close()

    asyncio.run(run())


class TestCli:

    def test_keygen(self, runner):
        result = runner.invoke(cli, ["keygen", "-n", "3"])

        assert result.exit_code == 0
        keys = result.output.split()
        assert len(keys) == 3
        assert all(is_valid_license_key(key) for key in keys)

    def test_split_then_reassemble(self, runner, tmp_path):
        source = tmp_path / "movie.mkv"
        source.write_bytes(bytes(range(256)) * 2)

        split = runner.invoke(cli, ["split", str(source), "--title", "Movie"])
        assert split.exit_code == 0, split.output

        manifests = ChunkStorage(tmp_path / "data").list_manifests()
        assert [m.title for m in manifests] == ["Movie"]
        assert manifests[0].chunk_count == 8

        result = runner.invoke(cli, [
            "reassemble", manifests[0].file_id, "-o", str(tmp_path / "out"),
        ])

        assert result.exit_code == 0, result.output
        assert (tmp_path / "out" / "movie.mkv").read_bytes() == source.read_bytes()

    def test_reassemble_unknown_file(self, runner):
        result = runner.invoke(cli, ["reassemble", "nope"])

        assert result.exit_code == 1
        assert "nope" in result.output

    def test_users_and_extend(self, runner, tmp_path):
        _seed_user(tmp_path / "data")

        users = runner.invoke(cli, ["users"])
        assert users.exit_code == 0
        assert "alice" in users.output

        extended = runner.invoke(cli, ["extend", ALICE_KEY, "5"])
        assert extended.exit_code == 0, extended.output
        assert "alice" in extended.output

        missing = runner.invoke(cli, ["extend", "LICS-NONE-NONE-NONEE", "5"])
        assert missing.exit_code == 1

    def test_users_empty(self, runner):
        result = runner.invoke(cli, ["users"])

        assert result.exit_code == 0
        assert "No users" in result.output

    @pytest.mark.parametrize("size, expected", [
        (0, "0.0 B"),
        (1536, "1.5 KB"),
        (10 * 1024 * 1024, "10.0 MB"),
    ])
    def test_format_size(self, size, expected):
        assert format_size(size) == expected

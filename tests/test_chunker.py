"""
Tests for splitting and reassembling files.

Properties:
- Reassembling a split file yields the original bytes
- Chunk indices are exactly 0..N-1 and sizes sum to the file size
- N == ceil(size / chunk_size)
"""

import asyncio
import hashlib
import json
import math
import random
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from licensehub.exceptions import IntegrityError, NotFoundError
from licensehub.file.chunker import (
    FileChunker, MANIFEST_FILE_NAME, chunk_blob_name, reassemble,
)
from licensehub.file.manifest import Manifest


def _write(path: Path, data: bytes) -> Path:
    path.write_bytes(data)
    return path


def _pattern(size: int) -> bytes:
    return (bytes(range(256)) * (size // 256 + 1))[:size]


class TestSplitReassembleProperty:

    @given(data=st.binary(max_size=8192), chunk_size=st.integers(min_value=16, max_value=2048))
    @settings(max_examples=50, deadline=None)
    def test_round_trip(self, data, chunk_size):
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            source = _write(tmp / "input.bin", data)
            chunker = FileChunker(chunk_size=chunk_size)

            manifest = asyncio.run(chunker.split(source, tmp / "chunks"))
            result = asyncio.run(
                chunker.reassemble(manifest, tmp / "chunks", tmp / "out" / "input.bin")
            )

            assert (tmp / "out" / "input.bin").read_bytes() == data
            assert result.size_matches
            assert manifest.chunk_count == math.ceil(len(data) / chunk_size)
            assert sorted(c.index for c in manifest.chunks) == list(range(manifest.chunk_count))
            assert manifest.is_contiguous
            assert sum(c.size for c in manifest.chunks) == len(data)


class TestSplit:

    def test_ten_million_bytes_at_four_million(self, tmp_path):
        data = _pattern(10_000_000)
        source = _write(tmp_path / "big.bin", data)
        chunker = FileChunker(chunk_size=4_000_000)

        manifest = asyncio.run(chunker.split(source, tmp_path / "chunks"))

        assert manifest.chunk_count == 3
        assert [c.size for c in manifest.chunks] == [4_000_000, 4_000_000, 2_000_000]
        assert manifest.chunks[2].hash == hashlib.md5(data[8_000_000:]).hexdigest()

        out = tmp_path / "out" / "big.bin"
        asyncio.run(chunker.reassemble(manifest, tmp_path / "chunks", out))
        assert out.read_bytes() == data

    def test_manifest_and_blob_names(self, tmp_path):
        source = _write(tmp_path / "game.iso", b"x" * 25)
        chunker = FileChunker(chunk_size=10)

        manifest = asyncio.run(chunker.split(source, tmp_path / "chunks", file_id="f1",
                                             title="My Game"))

        assert [c.file_name for c in manifest.chunks] == [
            "game_0.iso.chunk", "game_1.iso.chunk", "game_2.iso.chunk",
        ]
        assert [c.id for c in manifest.chunks] == ["f1_0", "f1_1", "f1_2"]
        assert all(c.source_file_name == "game.iso" for c in manifest.chunks)
        assert manifest.title == "My Game"

        saved = Manifest.load(tmp_path / "chunks" / MANIFEST_FILE_NAME)
        assert saved.to_dict() == manifest.to_dict()

    def test_hash_covers_only_bytes_read(self, tmp_path):
        source = _write(tmp_path / "a.bin", b"abcdefghij" + b"xyz")
        manifest = asyncio.run(FileChunker(chunk_size=10).split(source, tmp_path / "c"))

        assert manifest.chunks[1].size == 3
        assert manifest.chunks[1].hash == hashlib.md5(b"xyz").hexdigest()

    def test_generated_file_id(self, tmp_path):
        source = _write(tmp_path / "a.bin", b"data")
        manifest = asyncio.run(FileChunker().split(source, tmp_path / "c"))

        assert len(manifest.file_id) == 32
        assert manifest.title == "a"

    def test_empty_file_has_no_chunks(self, tmp_path):
        source = _write(tmp_path / "empty.txt", b"")
        chunker = FileChunker(chunk_size=10)

        manifest = asyncio.run(chunker.split(source, tmp_path / "c"))
        result = asyncio.run(chunker.reassemble(manifest, tmp_path / "c", tmp_path / "o.txt"))

        assert manifest.chunk_count == 0
        assert manifest.chunks == []
        assert result.size == 0
        assert (tmp_path / "o.txt").read_bytes() == b""

    def test_deterministic_boundaries(self, tmp_path):
        source = _write(tmp_path / "a.bin", _pattern(1000))
        chunker = FileChunker(chunk_size=64)

        first = asyncio.run(chunker.split(source, tmp_path / "one"))
        second = asyncio.run(chunker.split(source, tmp_path / "two"))

        assert [(c.size, c.hash) for c in first.chunks] == [(c.size, c.hash) for c in second.chunks]

    def test_missing_source(self, tmp_path):
        with pytest.raises(NotFoundError):
            asyncio.run(FileChunker().split(tmp_path / "nope.bin", tmp_path / "c"))

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            FileChunker(chunk_size=0)

    def test_chunk_blob_name_without_suffix(self):
        assert chunk_blob_name("README", 4) == "README_4.chunk"


class TestReassemble:

    def _split(self, tmp_path, data=b"0123456789" * 5, chunk_size=10):
        source = _write(tmp_path / "data.bin", data)
        chunker = FileChunker(chunk_size=chunk_size)
        manifest = asyncio.run(chunker.split(source, tmp_path / "chunks"))
        return chunker, manifest, data

    def test_order_follows_index_not_list_position(self, tmp_path):
        chunker, manifest, data = self._split(tmp_path, data=_pattern(95))
        random.Random(7).shuffle(manifest.chunks)

        out = tmp_path / "out.bin"
        asyncio.run(chunker.reassemble(manifest, tmp_path / "chunks", out))

        assert out.read_bytes() == data

    def test_missing_index(self, tmp_path):
        chunker, manifest, _ = self._split(tmp_path)
        manifest.chunks = [c for c in manifest.chunks if c.index != 2]

        with pytest.raises(NotFoundError, match="index 2"):
            asyncio.run(chunker.reassemble(manifest, tmp_path / "chunks", tmp_path / "o.bin"))

    def test_missing_blob(self, tmp_path):
        chunker, manifest, _ = self._split(tmp_path)
        (tmp_path / "chunks" / manifest.chunks[1].file_name).unlink()

        with pytest.raises(NotFoundError):
            asyncio.run(chunker.reassemble(manifest, tmp_path / "chunks", tmp_path / "o.bin"))

    def test_size_mismatch_is_a_warning_by_default(self, tmp_path, caplog):
        chunker, manifest, _ = self._split(tmp_path)
        manifest.file_size += 1

        result = asyncio.run(
            chunker.reassemble(manifest, tmp_path / "chunks", tmp_path / "o.bin")
        )

        assert not result.size_matches
        assert result.expected_size == result.size + 1
        assert "size mismatch" in caplog.text

    def test_size_mismatch_raises_when_strict(self, tmp_path):
        _, manifest, _ = self._split(tmp_path)
        manifest.file_size += 1
        strict = FileChunker(chunk_size=10, strict_integrity=True)

        with pytest.raises(IntegrityError):
            asyncio.run(strict.reassemble(manifest, tmp_path / "chunks", tmp_path / "o.bin"))

    def test_from_manifest_file(self, tmp_path):
        _, manifest, data = self._split(tmp_path)

        result = asyncio.run(
            reassemble(tmp_path / "chunks" / MANIFEST_FILE_NAME, tmp_path / "rebuilt")
        )

        assert result.path == tmp_path / "rebuilt" / "data.bin"
        assert result.path.read_bytes() == data

    def test_from_missing_manifest_file(self, tmp_path):
        with pytest.raises(NotFoundError):
            asyncio.run(reassemble(tmp_path / "manifest.json", tmp_path))

    def test_manifest_title_defaults_to_stem(self):
        manifest = Manifest.from_json(json.dumps({
            "file_id": "f", "file_name": "movie.mkv", "file_size": 0,
            "chunk_size": 10, "chunks": [],
        }))
        assert manifest.title == "movie"
        assert manifest.chunk_count == 0

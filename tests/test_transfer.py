"""
Tests for the transfer orchestrator: fetch, verify, reassemble.

Chunk blobs are served from a real ChunkStorage through httpx.MockTransport.
"""

import asyncio

import httpx
import pytest

from licensehub.client.transfer import (
    HttpChunkFetcher, TransferOrchestrator, safe_file_name,
)
from licensehub.exceptions import (
    CommandError, IntegrityError, ResponseTimeoutError, TransportError,
)
from licensehub.file.blobstore import LocalBlobStore
from licensehub.file.storage import ChunkStorage
from licensehub.protocol.messages import MessageType
from licensehub.protocol.payloads import ChunkRef, DownloadInfo

BASE_URL = "http://blobs.test/api/chunks"


class FakeClient:
    """Answers request_payload with a fixed DownloadInfo (or error)."""

    def __init__(self, info=None, error=None):
        self.info = info
        self.error = error
        self.requests = []

    async def request_payload(self, command, expect, timeout=None):
        self.requests.append((command, expect))
        if self.error:
            raise self.error
        return self.info


def _download_info(storage: ChunkStorage, manifest) -> DownloadInfo:
    blobs = LocalBlobStore(BASE_URL)
    return DownloadInfo(
        item_id=manifest.title,
        title=manifest.title,
        file_id=manifest.file_id,
        file_name=manifest.file_name,
        chunk_count=manifest.chunk_count,
        chunks=[
            ChunkRef(index=c.index, id=c.id, size=c.size,
                     url=blobs.url_for(manifest.file_id, c), hash=c.hash)
            for c in manifest.ordered_chunks()
        ],
        total_size=manifest.file_size,
    )


def _blob_handler(storage: ChunkStorage, missing=()):
    def handler(request: httpx.Request) -> httpx.Response:
        file_id, name = request.url.path.split("/")[-2:]
        if name in missing:
            return httpx.Response(404)
        return httpx.Response(200, content=storage.chunk_path(file_id, name).read_bytes())
    return handler


class Setup:

    def __init__(self, tmp_path, data=None, chunk_size=300):
        self.data = data if data is not None else bytes(range(256)) * 4
        self.storage = ChunkStorage(tmp_path / "server", chunk_size=chunk_size)
        source = tmp_path / "space_game.iso"
        source.write_bytes(self.data)
        self.manifest = asyncio.run(self.storage.store_file(source, title="Space Game"))
        self.info = _download_info(self.storage, self.manifest)
        self.download_dir = tmp_path / "downloads"

    def download(self, strict=False, keep_chunks=False, missing=(), client=None,
                 progress=None):
        async def run():
            transport = httpx.MockTransport(_blob_handler(self.storage, missing))
            async with httpx.AsyncClient(transport=transport) as http:
                orchestrator = TransferOrchestrator(
                    client or FakeClient(self.info),
                    self.download_dir,
                    fetcher=HttpChunkFetcher(client=http),
                    strict_integrity=strict,
                )
                return await orchestrator.download(
                    "space game", progress_callback=progress, keep_chunks=keep_chunks,
                )

        return asyncio.run(run())


class TestDownload:

    def test_end_to_end(self, tmp_path):
        setup = Setup(tmp_path)
        client = FakeClient(setup.info)
        phases = []
        percents = []

        def progress(p):
            phases.append(p.phase)
            percents.append(p.progress_percent)

        result = setup.download(client=client, progress=progress)

        assert client.requests == [("download space game", MessageType.DOWNLOAD_INFO)]
        assert result.output_path == setup.download_dir / "Space Game" / "space_game.iso"
        assert result.output_path.read_bytes() == setup.data
        assert result.chunk_count == 4
        assert result.verified
        assert not (setup.download_dir / "Space Game" / "chunks").exists()
        assert phases[-1] == "complete"
        assert "merging" in phases
        assert percents[-1] == 100.0

    def test_keep_chunks(self, tmp_path):
        setup = Setup(tmp_path)

        result = setup.download(keep_chunks=True)

        chunks_dir = setup.download_dir / "Space Game" / "chunks"
        assert sorted(p.name for p in chunks_dir.iterdir()) == [
            "chunk_0.bin", "chunk_1.bin", "chunk_2.bin", "chunk_3.bin",
        ]
        assert result.chunks_kept
        assert (chunks_dir / "chunk_3.bin").read_bytes() == setup.data[900:]

    def test_hash_mismatch_is_recorded_when_lenient(self, tmp_path, caplog):
        setup = Setup(tmp_path)
        setup.info.chunks[1].hash = "0" * 32

        result = setup.download()

        assert result.hash_mismatches == [1]
        assert not result.verified
        assert result.output_path.read_bytes() == setup.data
        assert "hash mismatch" in caplog.text

    def test_hash_mismatch_raises_when_strict(self, tmp_path):
        setup = Setup(tmp_path)
        setup.info.chunks[2].hash = "f" * 32

        with pytest.raises(IntegrityError) as exc_info:
            setup.download(strict=True)

        assert exc_info.value.details['index'] == 2
        assert not (setup.download_dir / "Space Game" / "space_game.iso").exists()

    def test_chunks_without_hash_are_not_checked(self, tmp_path):
        setup = Setup(tmp_path)
        for chunk in setup.info.chunks:
            chunk.hash = None

        result = setup.download(strict=True)

        assert result.verified

    def test_size_mismatch(self, tmp_path):
        setup = Setup(tmp_path)
        setup.info.total_size += 5

        result = setup.download()

        assert not result.size_matches
        assert result.expected_size == result.size + 5

    def test_size_mismatch_raises_when_strict(self, tmp_path):
        setup = Setup(tmp_path)
        setup.info.total_size += 5

        with pytest.raises(IntegrityError):
            setup.download(strict=True)

    def test_missing_blob_aborts(self, tmp_path):
        setup = Setup(tmp_path)

        with pytest.raises(TransportError, match="HTTP 404"):
            setup.download(missing={"space_game_2.iso.chunk"})

    def test_empty_file(self, tmp_path):
        setup = Setup(tmp_path, data=b"")

        result = setup.download()

        assert result.chunk_count == 0
        assert result.output_path.read_bytes() == b""

    @pytest.mark.parametrize("error", [
        ResponseTimeoutError("No response to 'download space game' within 15 seconds"),
        CommandError("Error: File 'space game' not found"),
    ])
    def test_request_errors_propagate(self, tmp_path, error):
        setup = Setup(tmp_path)

        with pytest.raises(type(error)):
            setup.download(client=FakeClient(error=error))

        assert not setup.download_dir.exists()


class TestHttpChunkFetcher:

    def test_fetch_writes_file_and_counts_bytes(self, tmp_path):
        body = b"z" * 200_000
        counted = []

        async def run():
            transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body))
            async with httpx.AsyncClient(transport=transport) as http:
                fetcher = HttpChunkFetcher(client=http)
                written = await fetcher.fetch("http://h/x", tmp_path / "x.bin", counted.append)
                await fetcher.close()
                # The shared client is still usable after the fetcher closes
                response = await http.get("http://h/y")
                return written, response.status_code

        written, status = asyncio.run(run())

        assert written == len(body)
        assert sum(counted) == len(body)
        assert (tmp_path / "x.bin").read_bytes() == body
        assert status == 200

    def test_transport_failure(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                await HttpChunkFetcher(client=http).fetch("http://h/x", tmp_path / "x.bin")

        with pytest.raises(TransportError):
            asyncio.run(run())


class TestSafeFileName:

    @pytest.mark.parametrize("name, expected", [
        ("Space Game", "Space Game"),
        ("a/b\\c", "a_b_c"),
        ("what?.iso", "what_.iso"),
        ("...", "download"),
        ("", "download"),
    ])
    def test_safe_file_name(self, name, expected):
        assert safe_file_name(name) == expected

"""Tests for typed response payloads."""

import json
from datetime import datetime, timezone

import pytest

from licensehub.exceptions import ProtocolError
from licensehub.protocol.messages import Message, MessageType
from licensehub.protocol.payloads import (
    PAYLOAD_SCHEMAS, ChunkRef, DownloadInfo, ListItem, ListResponse,
    create_response, decode_payload,
)


def _download_info() -> DownloadInfo:
    return DownloadInfo(
        item_id="game",
        title="Game",
        file_id="abc123",
        file_name="game.iso",
        chunk_count=2,
        chunks=[
            ChunkRef(index=1, id="abc123_1", size=4, url="http://h/abc123/game_1.iso.chunk"),
            ChunkRef(index=0, id="abc123_0", size=8, url="http://h/abc123/game_0.iso.chunk",
                     hash="0" * 32),
        ],
        total_size=12,
    )


class TestPayloads:

    def test_wire_keys_are_camel_case(self):
        data = json.loads(_download_info().to_content())

        assert {"itemId", "fileId", "fileName", "chunkCount", "totalSize"} <= set(data)
        assert "item_id" not in data

    def test_create_response_uses_registered_type(self):
        message = create_response(_download_info())
        assert message.type == MessageType.DOWNLOAD_INFO

    def test_decode_payload_returns_model(self):
        payload = decode_payload(create_response(_download_info()))

        assert isinstance(payload, DownloadInfo)
        assert payload.file_id == "abc123"
        assert payload.chunks[1].hash == "0" * 32
        assert payload.chunks[0].hash is None

    def test_ordered_chunks(self):
        assert [c.index for c in _download_info().ordered_chunks()] == [0, 1]

    def test_list_response(self):
        created = datetime(2025, 1, 1, tzinfo=timezone.utc)
        response = ListResponse(
            items=[ListItem(file_id="f", title="T", file_name="t.bin", size=1,
                            chunk_count=1, created_at=created)],
            total_count=1,
        )

        decoded = decode_payload(create_response(response))

        assert decoded.total_count == 1
        assert decoded.items[0].created_at == created

    def test_every_response_type_but_error_has_a_schema(self):
        assert set(PAYLOAD_SCHEMAS) == {
            MessageType.DOWNLOAD_INFO,
            MessageType.LIST_RESPONSE,
            MessageType.INFO_RESPONSE,
            MessageType.STATUS_RESPONSE,
        }

    def test_no_schema_for_notification(self):
        with pytest.raises(ProtocolError, match="No payload schema"):
            decode_payload(Message(type=MessageType.NOTIFICATION, content="{}"))

    @pytest.mark.parametrize("content", ["not json", "{}", '{"itemId": "x"}'])
    def test_invalid_content(self, content):
        with pytest.raises(ProtocolError):
            decode_payload(Message(type=MessageType.DOWNLOAD_INFO, content=content))

"""Tests for frame encoding and decoding."""

import json

import pytest

from mcp_session.jsonrpc import (
    JSONRPC_INVALID_REQUEST,
    JSONRPC_PARSE_ERROR,
    JsonRpcException,
    decode,
    encode,
)
from mcp_session.jsonrpc.messages import (
    is_notification,
    is_request,
    is_response,
    make_notification,
    make_request,
)


class TestEncode:
    """Tests for encode."""

    def test_round_trips_every_variant(self):
        """Decoding an encoded message gives back the same message."""
        messages = [
            make_request(1, "tools/list"),
            make_request("abc", "tools/call", {"name": "add", "arguments": {"a": 2}}),
            make_notification("notifications/initialized"),
            {"jsonrpc": "2.0", "id": 7, "result": {"tools": []}},
            {"jsonrpc": "2.0", "id": 8, "error": {"code": -32601, "message": "nope"}},
            {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "bad", "data": [1]}},
        ]
        for msg in messages:
            assert decode(encode(msg)) == msg

    def test_never_emits_newlines(self):
        """Embedded newlines are escaped, so one message is one line."""
        frame = encode(make_request(1, "echo", {"text": "a\nb\r\nc"}))
        assert "\n" not in frame and "\r" not in frame

    def test_keeps_unicode(self):
        """Non-ASCII text is written as is."""
        frame = encode(make_notification("notifications/message", {"data": "héllo"}))
        assert "héllo" in frame


class TestDecode:
    """Tests for decode."""

    def test_classifies_messages(self):
        """Requests, notifications and responses are told apart structurally."""
        assert is_request(decode('{"jsonrpc":"2.0","id":1,"method":"ping"}'))
        assert is_notification(decode('{"jsonrpc":"2.0","method":"notifications/initialized"}'))
        assert is_response(decode('{"jsonrpc":"2.0","id":1,"result":{}}'))

    def test_rejects_invalid_json(self):
        """Non-JSON frames are parse errors without an id."""
        with pytest.raises(JsonRpcException) as exc_info:
            decode("{not json")
        assert exc_info.value.code == JSONRPC_PARSE_ERROR
        assert exc_info.value.request_id is None

    def test_rejects_batches(self):
        """Batches are not part of MCP."""
        with pytest.raises(JsonRpcException) as exc_info:
            decode('[{"jsonrpc":"2.0","id":1,"method":"ping"}]')
        assert exc_info.value.code == JSONRPC_INVALID_REQUEST

    def test_rejects_wrong_version(self):
        """The envelope must say jsonrpc 2.0."""
        with pytest.raises(JsonRpcException) as exc_info:
            decode('{"jsonrpc":"1.0","id":3,"method":"ping"}')
        assert exc_info.value.code == JSONRPC_INVALID_REQUEST
        assert exc_info.value.request_id == 3

    def test_rejects_result_and_error_together(self):
        """A response carries exactly one of result and error."""
        with pytest.raises(JsonRpcException) as exc_info:
            decode('{"jsonrpc":"2.0","id":1,"result":{},"error":{"code":1,"message":"x"}}')
        assert exc_info.value.request_id is None

    def test_rejects_null_request_id(self):
        """MCP request ids are never null."""
        with pytest.raises(JsonRpcException) as exc_info:
            decode('{"jsonrpc":"2.0","id":null,"method":"ping"}')
        assert exc_info.value.code == JSONRPC_INVALID_REQUEST
        assert exc_info.value.request_id is None

    def test_salvages_request_id(self):
        """A request with bad params still gets an error addressed to it."""
        with pytest.raises(JsonRpcException) as exc_info:
            decode('{"jsonrpc":"2.0","id":"42","method":"tools/call","params":[1,2]}')
        assert exc_info.value.code == JSONRPC_INVALID_REQUEST
        assert exc_info.value.request_id == "42"

    def test_does_not_salvage_boolean_ids(self):
        """true is not a valid id, even though Python treats it as an int."""
        with pytest.raises(JsonRpcException) as exc_info:
            decode('{"jsonrpc":"2.0","id":true,"method":"ping"}')
        assert exc_info.value.request_id is None

    def test_rejects_shapeless_objects(self):
        """An object that is neither request, notification nor response."""
        with pytest.raises(JsonRpcException):
            decode('{"jsonrpc":"2.0","id":1}')

    def test_rejects_oversized_frames(self):
        """Frames over the size limit are rejected before parsing."""
        frame = json.dumps({"jsonrpc": "2.0", "method": "x", "params": {"data": "a" * 100}})
        with pytest.raises(JsonRpcException) as exc_info:
            decode(frame, max_size=50)
        assert exc_info.value.code == JSONRPC_PARSE_ERROR

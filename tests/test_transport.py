"""Tests for the transport bindings."""

import asyncio
import json

import pytest

from mcp_session.jsonrpc import (
    JsonRpcConnection,
    JsonRpcLineTransport,
    JsonRpcStreamTransport,
    create_memory_transport_pair,
    method,
)


class FakeWriter:
    """Collects bytes written by a transport."""

    def __init__(self):
        self.data = b""
        self.closed = False

    def write(self, data: bytes):
        self.data += data

    async def drain(self):
        pass

    def is_closing(self) -> bool:
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def reader_with(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class TestLineTransport:
    """Tests for newline-delimited framing."""

    async def test_reads_one_message_per_line(self):
        """Each line is one message; blank lines are skipped."""
        transport = JsonRpcLineTransport(reader_with(b'{"a":1}\n\n  \n{"b":2}\n'), FakeWriter())
        assert await transport.receive_message() == b'{"a":1}'
        assert await transport.receive_message() == b'{"b":2}'

    async def test_raises_eof_at_end_of_stream(self):
        """End of stream is reported as EOFError."""
        transport = JsonRpcLineTransport(reader_with(b""), FakeWriter())
        with pytest.raises(EOFError):
            await transport.receive_message()

    async def test_writes_newline_terminated_frames(self):
        """Sent messages get a trailing newline."""
        writer = FakeWriter()
        transport = JsonRpcLineTransport(reader_with(b""), writer)
        await transport.send_message('{"a":1}')
        assert writer.data == b'{"a":1}\n'

    async def test_refuses_embedded_newlines(self):
        """A message with a newline would split the frame."""
        transport = JsonRpcLineTransport(reader_with(b""), FakeWriter())
        with pytest.raises(ValueError):
            await transport.send_message('{"a":\n1}')

    async def test_hands_over_undecoded_bytes(self):
        """Invalid UTF-8 is left for the codec to reject."""
        transport = JsonRpcLineTransport(reader_with(b'{"s":"\xff"}\n'), FakeWriter())
        assert await transport.receive_message() == b'{"s":"\xff"}'

    async def test_reads_last_line_without_newline(self):
        """A final unterminated line is still a message."""
        transport = JsonRpcLineTransport(reader_with(b'{"a":1}'), FakeWriter())
        assert await transport.receive_message() == b'{"a":1}'
        with pytest.raises(EOFError):
            await transport.receive_message()

    async def test_drops_lines_over_the_limit(self):
        """An overlong line is skipped entirely and reading goes on."""
        reader = asyncio.StreamReader(limit=64)
        reader.feed_data(b'{"junk":"' + b"x" * 500 + b'"}\n{"a":1}\n')
        reader.feed_eof()
        transport = JsonRpcLineTransport(reader, FakeWriter())
        assert await transport.receive_message() == b'{"a":1}'

    async def test_bad_frames_do_not_end_the_connection(self):
        """After undecodable and overlong lines, requests are still answered."""

        class Echo:
            @method("echo")
            async def echo(self, ctx, params):
                return params

        reader = asyncio.StreamReader(limit=128)
        writer = FakeWriter()
        connection = JsonRpcConnection(JsonRpcLineTransport(reader, writer))
        connection.register_handlers(Echo())
        running = asyncio.create_task(connection.run())

        reader.feed_data(b'{"s":"\xff"}\n')
        reader.feed_data(b"x" * 1000 + b"\n")
        reader.feed_data(b'{"jsonrpc":"2.0","id":1,"method":"echo","params":{"ok":true}}\n')

        async def response():
            while b"\n" not in writer.data:
                await asyncio.sleep(0.01)
            return json.loads(writer.data.splitlines()[0])

        assert await asyncio.wait_for(response(), 1) == {"jsonrpc": "2.0", "id": 1, "result": {"ok": True}}
        assert not connection.closed
        reader.feed_eof()
        await asyncio.wait_for(running, 1)

    async def test_close_is_idempotent(self):
        """Closing twice is harmless."""
        writer = FakeWriter()
        transport = JsonRpcLineTransport(reader_with(b""), writer)
        await transport.close()
        await transport.close()
        assert writer.closed


class TestStreamTransport:
    """Tests for Content-Length framing."""

    async def test_round_trip(self):
        """What one side writes, the other side reads."""
        writer = FakeWriter()
        await JsonRpcStreamTransport(reader_with(b""), writer).send_message('{"text":"héllo"}')
        transport = JsonRpcStreamTransport(reader_with(writer.data), FakeWriter())
        assert await transport.receive_message() == '{"text":"héllo"}'.encode()

    async def test_raises_eof_on_truncated_stream(self):
        """A stream ending mid-frame is reported as EOFError."""
        transport = JsonRpcStreamTransport(reader_with(b"Content-Length: 10\r\n\r\n{}"), FakeWriter())
        with pytest.raises(EOFError):
            await transport.receive_message()

    async def test_skips_frames_without_length(self):
        """Frames with missing or bogus lengths are skipped."""
        data = b"garbage\r\nContent-Length: ten\r\n\r\nContent-Length: 2\r\n\r\n{}"
        transport = JsonRpcStreamTransport(reader_with(data), FakeWriter())
        assert await transport.receive_message() == b"{}"

    async def test_drops_oversized_frames(self):
        """Frames over the limit are consumed and dropped."""
        data = b'Content-Length: 12\r\n\r\n{"big":true}Content-Length: 2\r\n\r\n{}'
        transport = JsonRpcStreamTransport(reader_with(data), FakeWriter(), max_frame_size=8)
        assert await transport.receive_message() == b"{}"


class TestMemoryTransport:
    """Tests for in-process transport pairs."""

    async def test_delivers_in_order(self):
        """Messages arrive in the order they were sent."""
        a, b = create_memory_transport_pair()
        for i in range(3):
            await a.send_message(str(i))
        assert [await b.receive_message() for _ in range(3)] == ["0", "1", "2"]

    async def test_close_ends_both_sides(self):
        """Closing one end delivers end-of-stream to both."""
        a, b = create_memory_transport_pair()
        await a.close()
        with pytest.raises(EOFError):
            await b.receive_message()
        with pytest.raises(EOFError):
            await a.receive_message()

    async def test_send_after_close_fails(self):
        """Sending on a closed end raises ConnectionError."""
        a, _ = create_memory_transport_pair()
        await a.close()
        with pytest.raises(ConnectionError):
            await a.send_message("{}")

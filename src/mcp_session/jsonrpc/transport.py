"""JSON-RPC Transport Layer

This module provides the transport layer abstraction for JSON-RPC communication.
The transport layer is responsible for moving complete frames over a duplex
channel. It knows nothing about the content of the frames beyond their
boundaries.

The module defines:
1. A Protocol class that defines the transport interface
2. A newline-delimited binding, the framing used by MCP over stdio
3. A header-delimited binding for stream sockets (Content-Length framing)
4. An in-memory pair for embedding a client and a server in one process

Custom transports can be implemented by creating classes that implement the
JsonRpcTransport protocol.
"""

import asyncio
import logging
import sys
from typing import Protocol

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024
"""Largest line the stdio bindings will buffer."""


class JsonRpcTransport(Protocol):
    """Protocol defining the transport layer interface.

    This protocol must be implemented by all transport classes. Frames are
    delivered in the order they were sent, one complete message per frame.

    Example:
        ```python
        class MyTransport(JsonRpcTransport):
            async def receive_message(self) -> str:
                # Implementation for receiving messages
                ...

            async def send_message(self, body: str):
                # Implementation for sending messages
                ...

            async def close(self):
                ...
        ```
    """

    async def receive_message(self) -> str | bytes:
        """Receive a complete JSON-RPC message.

        This method should block until a complete message is received.

        Returns:
            str | bytes: The frame. Bytes are left undecoded so that invalid
                UTF-8 is reported as a parse error rather than a transport failure

        Raises:
            EOFError: When the peer has closed its side of the channel
        """
        ...

    async def send_message(self, body: str):
        """Send a JSON-RPC message.

        Args:
            body (str): The JSON-RPC message to send

        Raises:
            ConnectionError: If the message could not be written
        """
        ...

    async def close(self):
        """Release the channel. Must be safe to call more than once."""
        ...


async def _close_writer(writer: asyncio.StreamWriter):
    if writer.is_closing():
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, BrokenPipeError):
        logger.debug("Stream already gone while closing", exc_info=True)


class JsonRpcLineTransport:
    """Newline-delimited transport implementation.

    Each message is a single line of UTF-8 JSON terminated by `\\n`. This is
    the framing MCP uses over stdio. Messages must not contain embedded
    newlines; the codec never produces them, and this transport refuses to
    write one rather than split a frame.

    Args:
        reader (asyncio.StreamReader): The stream reader
        writer (asyncio.StreamWriter): The stream writer
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer

    async def receive_message(self) -> bytes:
        """Receive the next non-blank line, undecoded.

        Lines longer than the reader's limit are discarded with a warning.

        Raises:
            EOFError: If the stream ends
        """
        while True:
            try:
                line = await self._reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                # Last line without a terminating newline
                if not e.partial.strip():
                    raise EOFError("End of stream") from e
                line = e.partial
            except asyncio.LimitOverrunError as e:
                await self._discard_line(e.consumed)
                logger.warning("Dropped a line longer than the stream limit")
                continue
            line = line.strip()
            if line:
                return line

    async def _discard_line(self, consumed: int):
        while True:
            await self._reader.readexactly(consumed)
            try:
                await self._reader.readuntil(b"\n")
                return
            except asyncio.LimitOverrunError as e:
                consumed = e.consumed

    async def send_message(self, body: str):
        if "\n" in body or "\r" in body:
            raise ValueError("Messages sent over a line transport can't contain newlines")
        self._writer.write(body.encode() + b"\n")
        await self._writer.drain()

    async def close(self):
        await _close_writer(self._writer)


class JsonRpcStreamTransport:
    """Header-delimited transport for stream sockets.

    Every frame is preceded by a header block ending in an empty line:

        Content-Length: <length>
        Content-Type: application/json;charset=utf-8

        <message>

    Frames without a usable `Content-Length`, or announcing more than
    `max_frame_size` bytes, are skipped with a warning; their bodies are
    still consumed so the stream stays in sync.

    Args:
        reader (asyncio.StreamReader): The stream reader
        writer (asyncio.StreamWriter): The stream writer
        max_frame_size (int | None): Largest accepted body, in bytes
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_frame_size: int | None = None,
    ):
        self._reader = reader
        self._writer = writer
        self.max_frame_size = max_frame_size

    async def _read_headers(self) -> dict[str, str]:
        res: dict[str, str] = {}
        row = await self._reader.readuntil(b"\r\n")
        while row != b"\r\n":
            name, sep, value = row.partition(b":")
            if sep:
                res[name.strip().lower().decode("ascii", "replace")] = value.strip().decode("ascii", "replace")
            else:
                logger.warning("Ignoring malformed header line", extra={"header": row})
            row = await self._reader.readuntil(b"\r\n")
        return res

    def _content_length(self, headers: dict[str, str]) -> int | None:
        try:
            length = int(headers["content-length"])
        except (KeyError, ValueError):
            length = -1
        if length < 0:
            logger.warning("Received frame without a valid Content-Length", extra={"headers": headers})
            return None
        return length

    async def receive_message(self) -> bytes:
        """Receive the undecoded body of the next well-formed frame.

        Raises:
            EOFError: If the stream ends, including in the middle of a frame
        """
        while True:
            length = self._content_length(await self._read_headers())
            if length is None:
                continue
            body = await self._reader.readexactly(length)
            if self.max_frame_size is not None and length > self.max_frame_size:
                logger.warning("Dropping %d byte frame over the size limit", length)
                continue
            return body

    async def send_message(self, body: str):
        """Write one frame.

        Raises:
            ConnectionError: If there is an error writing to the stream
        """
        contents = body.encode()
        header = f"Content-Length: {len(contents)}\r\nContent-Type: application/json;charset=utf-8\r\n\r\n"
        self._writer.write(header.encode() + contents)
        await self._writer.drain()

    async def close(self):
        await _close_writer(self._writer)


_EOF = object()


class MemoryTransport:
    """One end of an in-process duplex channel.

    Use `create_memory_transport_pair` to get two connected ends. Closing
    either end delivers end-of-stream to both.
    """

    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue):
        self._inbox = inbox
        self._outbox = outbox
        self._closed = False

    async def receive_message(self) -> str:
        if self._closed:
            raise EOFError("Transport closed")
        item = await self._inbox.get()
        if item is _EOF:
            self._closed = True
            raise EOFError("Peer closed the transport")
        return item

    async def send_message(self, body: str):
        if self._closed:
            raise ConnectionError("Transport closed")
        await self._outbox.put(body)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self._outbox.put(_EOF)
        await self._inbox.put(_EOF)


def create_memory_transport_pair() -> tuple[MemoryTransport, MemoryTransport]:
    """Create two transports wired to each other, e.g. a client and a server end."""
    a_to_b: asyncio.Queue = asyncio.Queue()
    b_to_a: asyncio.Queue = asyncio.Queue()
    return MemoryTransport(b_to_a, a_to_b), MemoryTransport(a_to_b, b_to_a)


async def open_stdio_transport() -> JsonRpcLineTransport:
    """Serve over this process' stdin/stdout using line framing.

    Anything else the process wants to print must go to stderr.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    w_transport, w_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(w_transport, w_protocol, reader, loop)
    return JsonRpcLineTransport(reader, writer)


async def spawn_stdio_transport(
    program: str, *args: str
) -> tuple[JsonRpcLineTransport, asyncio.subprocess.Process]:
    """Launch a server subprocess and talk to it over its stdin/stdout."""
    proc = await asyncio.create_subprocess_exec(
        program,
        *args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        limit=STREAM_LIMIT,
    )

    assert proc.stdout is not None
    assert proc.stdin is not None

    return JsonRpcLineTransport(proc.stdout, proc.stdin), proc

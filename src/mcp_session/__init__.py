import asyncio
import logging
import urllib.parse

import logfire

from .client import ClientSession
from .config import SessionConfig
from .demo import build_demo_server
from .jsonrpc import (
    STREAM_LIMIT,
    CancellationToken,
    CapabilityError,
    ConnectionClosedError,
    JsonRpcException,
    JsonRpcLineTransport,
    ProtocolError,
    RequestCancelledError,
    RequestContext,
    RequestTimeoutError,
    UnsupportedProtocolVersion,
    create_memory_transport_pair,
    open_stdio_transport,
    spawn_stdio_transport,
)
from .lifecycle import LifecycleState
from .sampling import PydanticAISamplingHandler
from .server import Server, ServerSession

__all__ = (
    "CancellationToken",
    "CapabilityError",
    "ClientSession",
    "ConnectionClosedError",
    "JsonRpcException",
    "LifecycleState",
    "ProtocolError",
    "PydanticAISamplingHandler",
    "RequestCancelledError",
    "RequestContext",
    "RequestTimeoutError",
    "Server",
    "ServerSession",
    "SessionConfig",
    "UnsupportedProtocolVersion",
    "create_memory_transport_pair",
    "open_stdio_transport",
    "spawn_stdio_transport",
    "main",
)

logger = logging.getLogger(__name__)


async def _serve(server: Server, listen: urllib.parse.ParseResult | None):
    if listen is None:
        await server.serve(await open_stdio_transport())
        return

    async def on_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        logger.info("Client connected", extra={"peer": writer.get_extra_info("peername")})
        await server.serve(JsonRpcLineTransport(reader, writer))

    match listen.scheme:
        case "unix":
            listener = await asyncio.start_unix_server(on_connection, listen.path, limit=STREAM_LIMIT)
        case "tcp":
            listener = await asyncio.start_server(
                on_connection, listen.hostname, listen.port, limit=STREAM_LIMIT
            )
        case _:
            raise ValueError(f"Unsupported scheme {listen.scheme}")

    async with listener:
        logger.info("Listening on %s", listen.geturl())
        await listener.serve_forever()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Serve the MCP demo server")
    parser.add_argument(
        "listen",
        nargs="?",
        help="URI to listen on instead of stdio. Examples: tcp://localhost:1234 unix:///tmp/mcp.sock",
        type=urllib.parse.urlparse,
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=50,
        help="Items per page for list requests",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        help="Seconds to wait for responses to server-initiated requests",
    )
    parser.add_argument(
        "--log-level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
    )
    parser.add_argument(
        "--enable-logfire",
        action="store_true",
        help="Enables sending logs and traces to Logfire",
    )

    args = parser.parse_args()

    level = args.log_level.upper()
    if args.enable_logfire:
        logfire.configure(scrubbing=False)
        logging.basicConfig(level=level, handlers=[logfire.LogfireLoggingHandler()])
    else:
        # stdout carries the protocol when serving over stdio
        logging.basicConfig(level=level)

    config = SessionConfig(page_size=args.page_size, request_timeout=args.request_timeout)
    server = build_demo_server(config)

    logging.info("Starting loop", extra={"cliArgs": vars(args)})
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        loop.run_until_complete(_serve(server, args.listen))
    except KeyboardInterrupt:
        logging.info("Interrupted")

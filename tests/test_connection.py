"""Tests for the bidirectional JSON-RPC connection."""

import asyncio
import gc

import pytest

from conftest import RawPeer
from mcp_session.jsonrpc import (
    JSONRPC_INTERNAL_ERROR,
    JSONRPC_INVALID_REQUEST,
    JSONRPC_METHOD_NOT_FOUND,
    CancellationToken,
    ConnectionClosedError,
    JsonRpcConnection,
    JsonRpcException,
    RequestCancelledError,
    RequestContext,
    RequestTimeoutError,
    create_memory_transport_pair,
    method,
    notification,
)


class Handlers:
    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = asyncio.Event()
        self.notified: asyncio.Queue = asyncio.Queue()
        self.meta: dict = {}

    @method("echo")
    async def echo(self, ctx: RequestContext, params: dict) -> dict:
        self.meta = ctx.meta
        return params

    @method("fail")
    async def fail(self, ctx: RequestContext, params: dict) -> dict:
        raise JsonRpcException("Rejected", -32602, {"why": "testing"})

    @method("crash")
    async def crash(self, ctx: RequestContext, params: dict) -> dict:
        raise RuntimeError("boom")

    @method("slow")
    async def slow(self, ctx: RequestContext, params: dict) -> dict:
        self.started.set()
        await ctx.cancellation.wait()
        self.cancelled.set()
        return {}

    @method("count")
    async def count(self, ctx: RequestContext, params: dict) -> dict:
        for i in range(1, 4):
            await ctx.report_progress(i, 3)
        return {"done": True}

    @notification("hello")
    async def hello(self, params: dict):
        self.notified.put_nowait(params)


@pytest.fixture
async def pair():
    a, b = create_memory_transport_pair()
    client = JsonRpcConnection(a)
    server = JsonRpcConnection(b)
    handlers = Handlers()
    server.register_handlers(handlers)
    tasks = [asyncio.create_task(client.run()), asyncio.create_task(server.run())]
    yield client, server, handlers
    await client.close()
    await server.close()
    await asyncio.wait(tasks, timeout=1)


class TestRequests:
    """Tests for request/response handling."""

    async def test_round_trip(self, pair):
        """A request gets the handler's result."""
        client, _, _ = pair
        assert await client.send_request("echo", {"x": 1}) == {"x": 1}

    async def test_concurrent_requests(self, pair):
        """Many requests in flight each get their own answer."""
        client, _, _ = pair
        results = await asyncio.gather(*(client.send_request("echo", {"n": n}) for n in range(20)))
        assert [res["n"] for res in results] == list(range(20))

    async def test_unknown_method(self, pair):
        """Unknown methods get MethodNotFound."""
        client, _, _ = pair
        with pytest.raises(JsonRpcException) as exc_info:
            await client.send_request("nope")
        assert exc_info.value.code == JSONRPC_METHOD_NOT_FOUND

    async def test_handler_errors_are_forwarded(self, pair):
        """A JsonRpcException raised by a handler becomes the error response."""
        client, _, _ = pair
        with pytest.raises(JsonRpcException) as exc_info:
            await client.send_request("fail")
        assert exc_info.value.code == -32602
        assert exc_info.value.data == {"why": "testing"}

    async def test_handler_crashes_are_internal_errors(self, pair):
        """Unexpected exceptions become InternalError and the connection stays up."""
        client, _, _ = pair
        with pytest.raises(JsonRpcException) as exc_info:
            await client.send_request("crash")
        assert exc_info.value.code == JSONRPC_INTERNAL_ERROR
        assert await client.send_request("echo", {}) == {}

    async def test_meta_is_stripped_from_params(self, pair):
        """`_meta` goes to the context, not the handler params."""
        client, _, handlers = pair
        assert await client.send_request("echo", {"x": 1, "_meta": {"k": "v"}}) == {"x": 1}
        assert handlers.meta == {"k": "v"}


class TestCancellation:
    """Tests for cancelling outbound requests."""

    async def test_cancel_reaches_the_handler(self, pair):
        """Cancelling the token fails the caller and signals the peer's handler."""
        client, _, handlers = pair
        token = CancellationToken()
        request = asyncio.create_task(client.send_request("slow", cancellation_token=token))
        await asyncio.wait_for(handlers.started.wait(), 1)

        token.cancel("changed my mind")

        with pytest.raises(RequestCancelledError):
            await request
        await asyncio.wait_for(handlers.cancelled.wait(), 1)
        assert len(client.correlation) == 0

    async def test_timeout_cancels(self, pair):
        """A timed out request fails locally and is cancelled on the peer."""
        client, _, handlers = pair
        with pytest.raises(RequestTimeoutError):
            await client.send_request("slow", timeout=0.05)
        await asyncio.wait_for(handlers.cancelled.wait(), 1)

    async def test_pre_cancelled_token(self, pair):
        """Nothing is sent for an already cancelled token."""
        client, _, handlers = pair
        token = CancellationToken()
        token.cancel()
        with pytest.raises(RequestCancelledError):
            await client.send_request("slow", cancellation_token=token)
        assert not handlers.started.is_set()


class TestNotifications:
    """Tests for notifications and progress."""

    async def test_notification_is_delivered(self, pair):
        """Notifications reach their handler."""
        client, _, handlers = pair
        await client.send_notification("hello", {"who": "world"})
        assert await asyncio.wait_for(handlers.notified.get(), 1) == {"who": "world"}

    async def test_progress_reaches_the_caller(self, pair):
        """Progress notifications are routed by the request's progress token."""
        client, _, _ = pair
        seen = []
        res = await client.send_request(
            "count", progress_callback=lambda progress, total, message: seen.append((progress, total))
        )
        assert res == {"done": True}
        assert seen == [(1, 3), (2, 3), (3, 3)]

    async def test_slow_progress_callback_does_not_block(self, pair):
        """Other responses keep flowing while a progress callback is busy."""
        client, _, _ = pair
        release = asyncio.Event()

        async def callback(progress, total, message):
            await release.wait()

        counting = asyncio.create_task(client.send_request("count", progress_callback=callback))
        assert await asyncio.wait_for(client.send_request("echo", {"x": 1}), 1) == {"x": 1}
        assert await asyncio.wait_for(counting, 1) == {"done": True}
        release.set()

    async def test_malformed_utility_notifications_are_dropped(self, pair, caplog):
        """Cancellations and progress with bad params are logged and ignored."""
        client, _, _ = pair
        await client.send_notification("notifications/cancelled", {"reason": "no id"})
        await client.send_notification("notifications/progress", {"progressToken": 1, "progress": "lots"})
        assert await client.send_request("echo", {}) == {}
        assert "Malformed cancellation" in caplog.text
        assert "Malformed progress notification" in caplog.text


class TestRegistration:
    """Tests for handler registration."""

    def test_duplicate_method(self):
        """A method can only have one handler."""
        connection = JsonRpcConnection(create_memory_transport_pair()[0])

        async def handler(ctx, params):
            return {}

        connection.rpc_method("a", handler)
        with pytest.raises(ValueError):
            connection.rpc_method("a", handler)

    def test_sync_handler(self):
        """Handlers must be async."""
        connection = JsonRpcConnection(create_memory_transport_pair()[0])
        with pytest.raises(ValueError):
            connection.rpc_method("a", lambda ctx, params: {})

    def test_reserved_notification(self):
        """Cancellation is handled by the connection itself."""
        connection = JsonRpcConnection(create_memory_transport_pair()[0])

        async def handler(params):
            pass

        with pytest.raises(ValueError):
            connection.rpc_notification("notifications/cancelled", handler)


class TestTeardown:
    """Tests for connection loss."""

    async def test_peer_close_fails_pending(self, pair):
        """Requests in flight fail with ConnectionClosedError when the peer goes away."""
        client, server, handlers = pair
        request = asyncio.create_task(client.send_request("slow"))
        await asyncio.wait_for(handlers.started.wait(), 1)

        await server.close()

        with pytest.raises(ConnectionClosedError):
            await request
        await asyncio.wait_for(client.wait_closed(), 1)
        assert isinstance(client.close_reason, ConnectionClosedError)

    async def test_write_failure_leaves_no_unretrieved_errors(self):
        """A request whose write fails raises once and leaves nothing for the loop to report."""

        class BrokenPipe:
            async def send_message(self, message: str):
                raise BrokenPipeError("Broken pipe")

            async def receive_message(self) -> str:
                await asyncio.Event().wait()

            async def close(self):
                pass

        loop = asyncio.get_running_loop()
        errors = []
        loop.set_exception_handler(lambda loop, context: errors.append(context))
        try:
            connection = JsonRpcConnection(BrokenPipe())
            with pytest.raises(ConnectionClosedError):
                await connection.send_request("echo")
            assert connection.closed
            gc.collect()
        finally:
            loop.set_exception_handler(None)
        assert errors == []

    async def test_send_after_close(self, pair):
        """Nothing can be sent after close."""
        client, _, _ = pair
        await client.close()
        with pytest.raises(ConnectionClosedError):
            await client.send_request("echo")


class TestMalformedInput:
    """Tests for frames that aren't valid messages."""

    @pytest.fixture
    async def raw(self):
        a, b = create_memory_transport_pair()
        connection = JsonRpcConnection(b)
        connection.register_handlers(Handlers())
        task = asyncio.create_task(connection.run())
        yield RawPeer(a)
        await connection.close()
        await asyncio.wait((task,), timeout=1)

    async def test_salvaged_id_gets_an_error(self, raw):
        """A broken request with a readable id is answered with an error."""
        await raw.send('{"jsonrpc":"2.0","id":"42","method":"echo","params":"oops"}')
        res = await raw.recv()
        assert res["id"] == "42"
        assert res["error"]["code"] == JSONRPC_INVALID_REQUEST

    async def test_garbage_is_dropped(self, raw):
        """Unparseable frames are dropped and the connection keeps working."""
        await raw.send("this is not json")
        res = await raw.request(1, "echo", {"still": "alive"})
        assert res == {"jsonrpc": "2.0", "id": 1, "result": {"still": "alive"}}

    async def test_unknown_response_is_ignored(self, raw):
        """A response to a request nobody sent doesn't disturb the session."""
        await raw.send({"jsonrpc": "2.0", "id": 999, "result": {}})
        res = await raw.request(2, "echo", {})
        assert res["result"] == {}

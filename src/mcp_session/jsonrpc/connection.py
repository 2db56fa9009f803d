"""JSON-RPC Connection Management

This module provides the core JSON-RPC connection functionality, including:
1. Connection management and in-order message routing
2. Method and notification registration
3. Request/response correlation for outbound requests
4. Cooperative cancellation and progress reporting
5. Error handling and teardown

The module implements both client and server functionality in a single class,
allowing for bidirectional RPC communication: MCP servers issue requests to
their clients (sampling, roots) just as clients issue requests to servers.

Inbound frames are parsed by one reader task and dispatched strictly in
arrival order by one dispatch task. Every inbound request is then served in
its own task, so a slow handler never holds up unrelated messages.

Example:
    ```python
    class Calculator:
        @method("math/add")
        async def add(self, ctx: RequestContext, params: dict) -> dict:
            return {"sum": params["a"] + params["b"]}

    transport = JsonRpcLineTransport(reader, writer)
    connection = JsonRpcConnection(transport)
    connection.register_handlers(Calculator())

    await connection.run()

    # From the other side
    result = await peer.send_request("math/add", {"a": 2.5, "b": 3.7})
    ```

See Also:
    - transport.py: Transport layer implementations
    - codec.py: Frame validation
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, overload

from pydantic import BaseModel, ValidationError

from ..types import CancelledNotificationParams, ProgressNotificationParams
from . import codec
from .cancellation import CancellationToken, ProgressCallback, ProgressTracker
from .correlation import CorrelationTable, PendingRequest
from .exceptions import ConnectionClosedError, JsonRpcException, RequestTimeoutError
from .messages import (
    JSONRPC_INTERNAL_ERROR,
    JSONRPC_INVALID_PARAMS,
    JSONRPC_METHOD_NOT_FOUND,
    JsonRpcError,
    JsonRpcErrorResponse,
    JsonRpcMessage,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResult,
    ProgressToken,
    RequestId,
    make_notification,
    make_request,
)
from .transport import JsonRpcTransport

logger = logging.getLogger(__name__)

CANCELLED_NOTIFICATION = "notifications/cancelled"
PROGRESS_NOTIFICATION = "notifications/progress"

type RequestHandler = Callable[["RequestContext", dict[str, Any]], Awaitable[Any]]
type NotificationHandler = Callable[[dict[str, Any]], Awaitable[None]]
type InboundGate = Callable[[JsonRpcRequest | JsonRpcNotification], None]


@overload
def method[T: Callable[..., Any]](name: str) -> Callable[[T], T]: ...


@overload
def method[T: Callable[..., Any]](func: T) -> T: ...


def method(name_or_func):
    """Decorator to mark a function as a JSON-RPC method handler.

    Methods are RPC calls that expect a response. The decorated function must
    be async and cannot also be a notification handler. Handlers receive the
    `RequestContext` and the request params, and return the result object.

    Args:
        name_or_func (str | Callable): Either the method name to use in RPC calls,
            or the function to decorate. If a string is provided, it will be used
            as the method name, otherwise the function's name will be used.

    Returns:
        Callable: The decorated function.

    Raises:
        ValueError: If the decorated function is not async or is already a notification.

    Example:
        ```python
        class Server:
            @method
            async def ping(self, ctx: RequestContext, params: dict) -> dict:
                return {}

            @method("tools/list")  # Use custom method name
            async def list_tools(self, ctx: RequestContext, params: dict) -> dict: ...
        ```
    """
    if isinstance(name_or_func, str):
        name = name_or_func
    else:
        name = name_or_func.__name__

    def decorator[T: Callable[..., Any]](func: T) -> T:
        if not inspect.iscoroutinefunction(func):
            raise ValueError("Only async methods can be RPC methods")
        if getattr(func, "__jsonrpc_notification__", None) is not None:
            raise ValueError("A method can't also be a notification")
        setattr(func, "__jsonrpc_method__", name)
        return func

    if isinstance(name_or_func, str):
        return decorator
    else:
        return decorator(name_or_func)


@overload
def notification[T: Callable[..., Any]](name: str) -> Callable[[T], T]: ...


@overload
def notification[T: Callable[..., Any]](func: T) -> T: ...


def notification(name_or_func):
    """Decorator to mark a function as a JSON-RPC notification handler.

    Notifications are one-way messages that don't expect a response. The decorated
    function must be async and cannot also be a method handler. Handlers
    receive the notification params.

    Args:
        name_or_func (str | Callable): Either the notification name to handle,
            or the function to decorate.

    Returns:
        Callable: The decorated function.

    Raises:
        ValueError: If the decorated function is not async or is already a method.

    Example:
        ```python
        class Client:
            @notification("notifications/message")
            async def log(self, params: dict): ...
        ```
    """
    if isinstance(name_or_func, str):
        name = name_or_func
    else:
        name = name_or_func.__name__

    def decorator[T: Callable[..., Any]](func: T) -> T:
        if not inspect.iscoroutinefunction(func):
            raise ValueError("Only async methods can be RPC notifications")
        if getattr(func, "__jsonrpc_method__", None) is not None:
            raise ValueError("A notification can't also be a method")
        setattr(func, "__jsonrpc_notification__", name)
        return func

    if isinstance(name_or_func, str):
        return decorator
    else:
        return decorator(name_or_func)


@dataclass
class RequestContext:
    """What a request handler knows about the request it is serving.

    Attributes:
        connection: The connection the request arrived on
        request_id: Id chosen by the peer
        method: The method being served
        cancellation: Set when the peer cancels the request or the connection drops
        meta: The request's `_meta` object, stripped from its params
        session: The object owning the connection, e.g. an MCP server session
    """

    connection: "JsonRpcConnection"
    request_id: RequestId
    method: str
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    meta: dict[str, Any] = field(default_factory=dict)
    session: Any = None
    _last_progress: float | None = field(default=None, repr=False)

    @property
    def progress_token(self) -> ProgressToken | None:
        return self.meta.get("progressToken")

    async def report_progress(
        self,
        progress: float,
        total: float | None = None,
        message: str | None = None,
    ):
        """Send a progress notification, if the caller asked for progress."""
        token = self.progress_token
        if token is None or self.cancellation.cancelled:
            return

        if self._last_progress is not None and progress < self._last_progress:
            logger.warning(
                "Progress for request %s went backwards",
                self.request_id,
                extra={"previous": self._last_progress, "progress": progress},
            )
        self._last_progress = progress

        params: dict[str, Any] = {"progressToken": token, "progress": progress}
        if total is not None:
            params["total"] = total
        if message is not None:
            params["message"] = message
        await self.connection.send_notification(PROGRESS_NOTIFICATION, params)


@dataclass
class _InflightRequest:
    ctx: RequestContext
    task: asyncio.Task


def _to_result(res: Any) -> dict[str, Any]:
    if res is None:
        return {}
    if isinstance(res, BaseModel):
        return res.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(res, dict):
        return res
    raise TypeError(f"Handlers must return an object, not {type(res).__name__}")


class JsonRpcConnection:
    """Manages a JSON-RPC connection over a transport layer.

    This class handles the core JSON-RPC protocol functionality, including:
    - Message sending and receiving
    - Method and notification routing
    - Request/response correlation
    - Cancellation and progress notifications
    - Error handling and teardown

    At most one handler can be registered per method name; registering a
    second one raises `ValueError`.

    Args:
        transport (JsonRpcTransport): The transport layer to use for communication.
        session (Any): Exposed to handlers as `RequestContext.session`
        max_message_size (int): Inbound frames larger than this are rejected
    """

    def __init__(
        self,
        transport: JsonRpcTransport,
        *,
        session: Any = None,
        max_message_size: int = codec.DEFAULT_MAX_MESSAGE_SIZE,
    ):
        self._transport = transport
        self._session = session
        self._max_message_size = max_message_size
        self._table = CorrelationTable()
        self._progress = ProgressTracker()
        self._inflight: dict[RequestId, _InflightRequest] = {}
        self._tasks: set[asyncio.Task] = set()
        self._method_handlers: dict[str, RequestHandler] = {}
        self._noti_handlers: dict[str, NotificationHandler] = {}
        self._gate: InboundGate | None = None
        self._queue: asyncio.Queue[JsonRpcMessage | None] = asyncio.Queue()
        self._send_lock = asyncio.Lock()
        self._read_task: asyncio.Task | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._closed = False
        self._closed_event = asyncio.Event()
        self._close_callbacks: list[Callable[[JsonRpcException], None]] = []
        self.close_reason: JsonRpcException | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def correlation(self) -> CorrelationTable:
        return self._table

    @property
    def inflight(self) -> list[RequestContext]:
        """Contexts of inbound requests whose handlers are still running."""
        return [req.ctx for req in self._inflight.values()]

    def set_gate(self, gate: InboundGate | None):
        """Install a check run, in arrival order, on every inbound request and notification.

        The gate raises `JsonRpcException` to reject a message. Rejected
        requests get the exception as their error response; rejected
        notifications are dropped.
        """
        self._gate = gate

    def on_close(self, callback: Callable[[JsonRpcException], None]):
        self._close_callbacks.append(callback)

    def rpc_method(self, method_name: str, func: RequestHandler | None = None):
        """Registers a function as the handler for a specific RPC method.

        Args:
            method_name (str): The name of the RPC method to handle.
            func (Callable | None, optional): The handler function. If None,
                returns a decorator. Defaults to None.

        Raises:
            ValueError: If the function isn't async or the method already has a handler.
        """

        def decorator(func):
            if not inspect.iscoroutinefunction(func):
                raise ValueError("Only async functions can be RPC methods")
            if method_name in self._method_handlers:
                raise ValueError(f"A handler for {method_name} is already registered")
            self._method_handlers[method_name] = func
            return func

        if func is None:
            return decorator
        else:
            decorator(func)

    def rpc_notification(self, method_name: str, func: NotificationHandler | None = None):
        """Registers a function as the handler for a specific RPC notification.

        Cancellation and progress notifications are handled by the connection
        itself and can't be registered.

        Raises:
            ValueError: If the function isn't async or the notification already has a handler.
        """

        def decorator(func):
            if not inspect.iscoroutinefunction(func):
                raise ValueError("Only async functions can be RPC notifications")
            if method_name in (CANCELLED_NOTIFICATION, PROGRESS_NOTIFICATION):
                raise ValueError(f"{method_name} is handled by the connection")
            if method_name in self._noti_handlers:
                raise ValueError(f"A handler for {method_name} is already registered")
            self._noti_handlers[method_name] = func
            return func

        if func is None:
            return decorator
        else:
            decorator(func)

    def register_handlers(self, obj: Any):
        """Register every method of `obj` marked with `@method` or `@notification`."""
        klass = type(obj)
        for attr_name in dir(klass):
            if attr_name.startswith("__"):
                continue
            # Look the marker up on the class so properties aren't evaluated
            attr = getattr(klass, attr_name)
            if not callable(attr):
                continue

            name: str | None = getattr(attr, "__jsonrpc_method__", None)
            if name is not None:
                self.rpc_method(name, getattr(obj, attr_name))
                continue
            name = getattr(attr, "__jsonrpc_notification__", None)
            if name is not None:
                self.rpc_notification(name, getattr(obj, attr_name))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send_obj(self, obj: JsonRpcMessage):
        if self._closed:
            raise ConnectionClosedError(str(self.close_reason or "Connection closed"))

        body = codec.encode(obj)
        logger.debug("Object sent", extra={"jsonRpcMsg": obj})
        try:
            async with self._send_lock:
                await self._transport.send_message(body)
        except (OSError, EOFError) as e:
            reason = ConnectionClosedError(f"Transport write failed: {e}")
            await self._teardown(reason)
            raise reason from e

    async def _send_err(self, id: RequestId | None, err: JsonRpcError):
        await self._send_obj(JsonRpcErrorResponse(jsonrpc="2.0", id=id, error=err))

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        cancellation_token: CancellationToken | None = None,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Sends a JSON-RPC request and waits for the response.

        Args:
            method (str): The name of the RPC method to call.
            params (dict | None): The request params.
            cancellation_token (CancellationToken | None): Cancelling it abandons
                the request and tells the peer to stop working on it.
            progress_callback (ProgressCallback | None): If given, a progress
                token is attached and progress notifications are routed here.
            timeout (float | None): Seconds to wait before abandoning the request.

        Returns:
            dict: The result object.

        Raises:
            JsonRpcException: If the peer returns an error response.
            RequestCancelledError: If the request was abandoned locally.
            RequestTimeoutError: If the timeout expired.
            ConnectionClosedError: If the connection went away first.
        """
        if cancellation_token is not None:
            cancellation_token.raise_if_cancelled()

        pending = self._table.issue(method, cancellation_token=cancellation_token)

        if progress_callback is not None:
            pending.progress_token = pending.id
            self._progress.register(pending.id, progress_callback)
            params = dict(params or {})
            params["_meta"] = {**params.get("_meta", {}), "progressToken": pending.id}

        def on_cancel(token: CancellationToken):
            self._abandon(pending, token.reason)

        pending.cancellation_token.add_callback(on_cancel)
        try:
            try:
                await self._send_obj(make_request(pending.id, method, params))
            except BaseException as e:
                if isinstance(e, JsonRpcException):
                    self._table.fail(pending.id, e)
                else:
                    self._table.cancel(pending.id, "Request was never sent")
                # The send error is raised instead, so the future is never awaited
                if pending.future.done() and not pending.future.cancelled():
                    pending.future.exception()
                raise

            try:
                done, _ = await asyncio.wait((pending.future,), timeout=timeout)
            except asyncio.CancelledError:
                self._abandon(pending, "Request was cancelled by the caller")
                raise

            if not done:
                assert timeout is not None
                self._abandon(pending, f"Timed out after {timeout}s", RequestTimeoutError(pending.id, timeout))
            return pending.future.result()
        finally:
            pending.cancellation_token.remove_callback(on_cancel)
            if pending.progress_token is not None:
                self._progress.unregister(pending.progress_token)

    def _abandon(
        self,
        pending: PendingRequest,
        reason: str | None,
        exc: JsonRpcException | None = None,
    ):
        if exc is not None:
            abandoned = self._table.fail(pending.id, exc)
        else:
            abandoned = self._table.cancel(pending.id, reason)
        if abandoned is None or self._closed:
            return

        logger.debug("Abandoning request %s (%s)", pending.id, pending.method, extra={"reason": reason})
        # MCP forbids cancelling the initialize request
        if pending.method == "initialize":
            return
        params: dict[str, Any] = {"requestId": pending.id}
        if reason is not None:
            params["reason"] = reason
        self._spawn(self._send_cancelled(params))

    async def _send_cancelled(self, params: dict[str, Any]):
        try:
            await self.send_notification(CANCELLED_NOTIFICATION, params)
        except ConnectionClosedError:
            logger.debug("Couldn't send cancellation, connection closed")

    async def send_notification(self, method: str, params: dict[str, Any] | None = None):
        """Sends a JSON-RPC notification.

        Raises:
            ConnectionClosedError: If the connection is closed.
        """
        await self._send_obj(make_notification(method, params))

    async def _handle_notification(self, noti: JsonRpcNotification):
        logger.debug("Handling notification", extra={"jsonRpcMsg": noti})

        method = noti["method"]
        params = noti.get("params") or {}

        if method == CANCELLED_NOTIFICATION:
            self._handle_cancelled(params)
            return
        if method == PROGRESS_NOTIFICATION:
            self._handle_progress(params)
            return

        if method not in self._noti_handlers:
            logger.debug(
                "Unhandled notification %s",
                method,
                extra={"params": params},
            )
            return

        handler = self._noti_handlers[method]

        async def do_handling(handler: NotificationHandler, params: dict[str, Any]):
            try:
                await handler(params)
            except ValidationError:
                logger.warning(
                    "Received notification %s with wrong parameter types",
                    method,
                    extra={"params": params},
                    exc_info=True,
                )
            except Exception:
                logger.exception("Notification handler for %s failed", method)

        self._spawn(do_handling(handler, params))

    def _handle_cancelled(self, params: dict[str, Any]):
        try:
            cancelled = CancelledNotificationParams.model_validate(params)
        except ValidationError:
            logger.warning("Malformed cancellation", extra={"params": params}, exc_info=True)
            return

        inflight = self._inflight.get(cancelled.requestId)
        if inflight is None:
            logger.debug("Cancellation for unknown or finished request %r", cancelled.requestId)
            return
        if inflight.ctx.method == "initialize":
            logger.warning("Ignoring attempt to cancel the initialize request")
            return
        inflight.ctx.cancellation.cancel(cancelled.reason)

    def _handle_progress(self, params: dict[str, Any]):
        try:
            update = ProgressNotificationParams.model_validate(params)
        except ValidationError:
            logger.warning("Malformed progress notification", extra={"params": params}, exc_info=True)
            return

        token = update.progressToken
        try:
            res = self._progress.handle(token, update.progress, update.total, update.message)
        except Exception:
            logger.exception("Progress callback for token %r failed", token)
            return
        if res is not None:
            self._spawn(self._await_progress_callback(token, res))

    async def _await_progress_callback(self, token: ProgressToken, res: Awaitable[None]):
        try:
            await res
        except Exception:
            logger.exception("Progress callback for token %r failed", token)

    async def _send_response(self, ctx: RequestContext, coro: Awaitable[Any]):
        err: JsonRpcError | None = None
        try:
            res = _to_result(await coro)
        except JsonRpcException as e:
            err = e.to_err()
        except ValidationError as e:
            err = JsonRpcError(
                message=str(e),
                code=JSONRPC_INVALID_PARAMS,
                data=e.errors(include_url=False, include_context=False, include_input=False),
            )
        except Exception as e:
            logger.exception("Handler for %s failed", ctx.method)
            err = JsonRpcError(message=str(e), code=JSONRPC_INTERNAL_ERROR)

        if ctx.cancellation.cancelled:
            logger.debug("Request %s was cancelled, dropping its response", ctx.request_id)
            return

        try:
            if err is not None:
                await self._send_err(ctx.request_id, err)
            else:
                await self._send_obj(JsonRpcResult(jsonrpc="2.0", id=ctx.request_id, result=res))
        except ConnectionClosedError:
            logger.debug("Connection closed before the response to %s could be sent", ctx.request_id)

    async def _handle_request(self, req: JsonRpcRequest):
        logger.debug("Handling request", extra={"jsonRpcMsg": req})

        method = req["method"]
        id = req["id"]

        if id in self._inflight:
            logger.warning("Dropping request reusing in-flight id %s", id, extra={"jsonRpcMsg": req})
            return

        if method not in self._method_handlers:
            await self._send_err(
                id,
                JsonRpcError(code=JSONRPC_METHOD_NOT_FOUND, message=f"Method not found: {method}"),
            )
            return

        params = dict(req.get("params") or {})
        meta = params.pop("_meta", None)
        ctx = RequestContext(
            connection=self,
            request_id=id,
            method=method,
            meta=meta if isinstance(meta, dict) else {},
            session=self._session,
        )

        handler = self._method_handlers[method]
        task = self._spawn(self._send_response(ctx, handler(ctx, params)))
        self._inflight[id] = _InflightRequest(ctx, task)
        task.add_done_callback(lambda _: self._inflight.pop(id, None))

    async def _dispatch(self, msg: JsonRpcMessage):
        if "result" in msg or "error" in msg:
            logger.debug("Handling response", extra={"jsonRpcMsg": msg})
            self._table.resolve(msg)
            return

        if self._gate is not None:
            try:
                self._gate(msg)
            except JsonRpcException as e:
                if "id" in msg:
                    await self._send_err(msg["id"], e.to_err())
                else:
                    logger.warning(
                        "Dropping notification %s: %s",
                        msg["method"],
                        e,
                        extra={"jsonRpcMsg": msg},
                    )
                return

        if "id" in msg:
            await self._handle_request(msg)
        else:
            await self._handle_notification(msg)

    async def _handle_decode_error(self, e: JsonRpcException):
        if e.request_id is not None:
            logger.warning("Rejecting malformed request %s: %s", e.request_id, e)
            await self._send_err(e.request_id, e.to_err())
        else:
            logger.warning("Dropping malformed frame: %s", e, extra={"error": e.to_err()})

    async def _read_messages(self):
        while True:
            try:
                raw = await self._transport.receive_message()
            except EOFError:
                logger.info("Peer closed the connection")
                break

            try:
                msg = codec.decode(raw, self._max_message_size)
            except JsonRpcException as e:
                await self._handle_decode_error(e)
                continue

            logger.debug("Received message", extra={"jsonRpcMsg": msg})
            await self._queue.put(msg)
        await self._queue.put(None)

    async def _dispatch_messages(self):
        while True:
            msg = await self._queue.get()
            try:
                if msg is None:
                    return
                try:
                    await self._dispatch(msg)
                except ConnectionClosedError:
                    return
            finally:
                self._queue.task_done()

    async def run(self):
        """Runs the JSON-RPC connection until it closes.

        This method starts the message processing loop that handles incoming
        messages and dispatches them to the appropriate handlers. It returns
        once the peer closes the channel, the transport fails or `close()` is
        called; the cause is then available as `close_reason`.

        Raises:
            asyncio.CancelledError: If the connection is cancelled.
            Exception: If an unexpected error occurs during message processing.
        """
        if self._read_task is not None:
            raise RuntimeError("Connection is already running")

        read = self._read_task = asyncio.create_task(self._read_messages())
        dispatch = self._dispatch_task = asyncio.create_task(self._dispatch_messages())

        try:
            done, _ = await asyncio.wait((read, dispatch), return_when=asyncio.FIRST_COMPLETED)
            if read in done and not read.cancelled() and read.exception() is None:
                # Let already received messages through before tearing down
                await asyncio.wait((dispatch,))
        except asyncio.CancelledError:
            await self._teardown(ConnectionClosedError("Connection cancelled"))
            raise

        failure: BaseException | None = None
        for task in (read, dispatch):
            if task.done() and not task.cancelled() and task.exception() is not None:
                failure = task.exception()
                break

        match failure:
            case None:
                await self._teardown(ConnectionClosedError("Peer closed the connection"))
            case OSError() | EOFError():
                await self._teardown(ConnectionClosedError(f"Transport failed: {failure}"))
            case JsonRpcException():
                await self._teardown(failure)
            case _:
                await self._teardown(ConnectionClosedError(f"Connection failed: {failure}"))
                raise failure

        await self._closed_event.wait()

    async def close(self, reason: str = "Connection closed locally"):
        """Tear the connection down. Safe to call more than once."""
        await self._teardown(ConnectionClosedError(reason))

    async def wait_closed(self):
        await self._closed_event.wait()

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for outstanding requests in both directions to finish.

        Returns:
            bool: False if the timeout expired first.
        """
        waitables: list[asyncio.Future] = [p.future for p in self._table.outstanding()]
        waitables.extend(req.task for req in self._inflight.values())
        if not waitables:
            return True
        _, pending = await asyncio.wait(waitables, timeout=timeout)
        return not pending

    async def _teardown(self, reason: JsonRpcException):
        if self._closed:
            return
        self._closed = True
        self.close_reason = reason
        logger.info("Closing connection: %s", reason)

        failed = self._table.fail_all(reason)
        if failed:
            logger.debug("Failed %d outstanding requests", failed)
        for req in self._inflight.values():
            req.ctx.cancellation.cancel("Connection closed")

        current = asyncio.current_task()
        for task in (*self._tasks, self._read_task, self._dispatch_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        try:
            await self._transport.close()
        except OSError:
            logger.debug("Error while closing transport", exc_info=True)

        self._closed_event.set()
        for callback in self._close_callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("Close callback failed")

"""Behaviour shared by client and server sessions.

A session owns exactly one connection and layers the MCP rules on top of
it: every inbound message passes the lifecycle and capability checks in
arrival order, every outbound message is checked before it is written,
and the session is torn down exactly once, whichever side or failure
ends it.
"""

import asyncio
import logging
from typing import Any, ClassVar

from pydantic import BaseModel, ValidationError

from .capabilities import CapabilityRegistry
from .config import SessionConfig
from .jsonrpc import (
    CancellationToken,
    CapabilityError,
    JsonRpcConnection,
    JsonRpcException,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcTransport,
    ProgressCallback,
    ProtocolError,
    RequestContext,
    method,
)
from .lifecycle import Lifecycle, LifecycleState, SessionRole
from .types import ClientCapabilities, ServerCapabilities

logger = logging.getLogger(__name__)


class BaseSession:
    """One side of an MCP session over one transport.

    Subclasses set `role` and declare their protocol handlers with the
    `@method` / `@notification` decorators; they are registered on the
    connection when the session is created.

    Example:
        ```python
        async with ClientSession(transport) as session:
            await session.initialize()
            await session.ping()
        ```
    """

    role: ClassVar[SessionRole]

    def __init__(
        self,
        transport: JsonRpcTransport,
        *,
        local_capabilities: ClientCapabilities | ServerCapabilities,
        config: SessionConfig | None = None,
    ):
        self.config = config or SessionConfig()
        self.lifecycle = Lifecycle(self.role, self.config.supported_protocol_versions)
        self.capabilities = CapabilityRegistry(self.role, local_capabilities)
        self.connection = JsonRpcConnection(
            transport,
            session=self,
            max_message_size=self.config.max_message_size,
        )
        self.connection.set_gate(self._check_inbound)
        self.connection.on_close(self._on_connection_closed)
        self.connection.register_handlers(self)
        self._run_task: asyncio.Task | None = None

    @property
    def state(self) -> LifecycleState:
        return self.lifecycle.state

    @property
    def protocol_version(self) -> str | None:
        return self.lifecycle.protocol_version

    @property
    def closed(self) -> bool:
        return self.connection.closed

    @property
    def close_reason(self) -> JsonRpcException | None:
        return self.connection.close_reason

    def _check_inbound(self, msg: JsonRpcRequest | JsonRpcNotification):
        self.lifecycle.check_inbound(msg)
        if "id" in msg:
            self.capabilities.require_inbound_request(msg["method"])
        elif not self.capabilities.allows_inbound_notification(msg["method"]):
            raise CapabilityError(f"{msg['method']} was not declared", msg["method"])

    async def send_request[T: BaseModel](
        self,
        method: str,
        params: BaseModel | dict[str, Any] | None = None,
        result_type: type[T] | None = None,
        *,
        cancellation_token: CancellationToken | None = None,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> T | dict[str, Any]:
        """Send a request after checking it is legal, and wait for its result.

        Args:
            method: The MCP method
            params: Params model or plain dict
            result_type: Model to validate the result with; the raw dict is
                returned when omitted
            cancellation_token: Cancel it to abandon the request
            progress_callback: Receives progress notifications for this request
            timeout: Overrides `SessionConfig.request_timeout`

        Raises:
            ProtocolError: If the request isn't legal in the current state, or
                the result doesn't match `result_type`.
            CapabilityError: If the peer never declared the feature.
            JsonRpcException: If the peer answered with an error.
        """
        self.lifecycle.check_outbound(method, True)
        self.capabilities.require_outbound_request(method)

        if isinstance(params, BaseModel):
            params = params.model_dump(mode="json", by_alias=True, exclude_none=True)

        res = await self.connection.send_request(
            method,
            params,
            cancellation_token=cancellation_token,
            progress_callback=progress_callback,
            timeout=timeout if timeout is not None else self.config.request_timeout,
        )
        if result_type is None:
            return res
        try:
            return result_type.model_validate(res)
        except ValidationError as e:
            raise ProtocolError(
                f"Malformed {method} result",
                e.errors(include_url=False, include_context=False, include_input=False),
            ) from e

    async def send_notification(
        self, method: str, params: BaseModel | dict[str, Any] | None = None
    ):
        self.lifecycle.check_outbound(method, False)
        self.capabilities.require_outbound_notification(method)
        if isinstance(params, BaseModel):
            params = params.model_dump(mode="json", by_alias=True, exclude_none=True)
        await self.connection.send_notification(method, params)

    async def ping(self, timeout: float | None = None):
        """Check the peer is alive. Legal in every state but CLOSED."""
        await self.send_request("ping", timeout=timeout)

    @method("ping")
    async def _handle_ping(self, ctx: RequestContext, params: dict[str, Any]) -> dict[str, Any]:
        return {}

    def start(self) -> asyncio.Task:
        """Run the session in a background task."""
        if self._run_task is None:
            self._run_task = asyncio.create_task(self.run())
        return self._run_task

    async def run(self):
        """Process messages until the session closes."""
        await self.connection.run()

    async def shutdown(self, timeout: float | None = None):
        """Stop accepting new work, let in-flight requests finish, then close.

        Requests still outstanding after `timeout` (default
        `SessionConfig.shutdown_timeout`) fail with `ConnectionClosedError`.
        """
        if self.lifecycle.begin_shutdown():
            timeout = timeout if timeout is not None else self.config.shutdown_timeout
            if not await self.connection.drain(timeout):
                logger.warning("Closing with requests still in flight after %ss", timeout)
            await self.connection.close("Session shut down")

        await self.connection.wait_closed()
        if self._run_task is not None and self._run_task is not asyncio.current_task():
            await asyncio.wait((self._run_task,))

    async def wait_closed(self):
        await self.connection.wait_closed()

    def _on_connection_closed(self, reason: JsonRpcException):
        self.lifecycle.begin_shutdown()
        self.lifecycle.close()
        self._on_close(reason)

    def _on_close(self, reason: JsonRpcException):
        """Hook for subclasses, run once when the session is torn down."""

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.shutdown()

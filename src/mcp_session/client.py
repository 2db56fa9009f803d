"""MCP client session.

Example:
    ```python
    transport, proc = await spawn_stdio_transport("mcp-session-engine")
    async with ClientSession(transport) as session:
        await session.initialize()
        async for tool in session.iter_tools():
            print(tool.name)
        result = await session.call_tool("add", {"a": 2, "b": 3})
    ```
"""

import logging
from typing import Any, AsyncIterator, Awaitable, Callable

from .config import SessionConfig
from .jsonrpc import (
    JSONRPC_METHOD_NOT_FOUND,
    CancellationToken,
    JsonRpcException,
    JsonRpcTransport,
    ProgressCallback,
    RequestContext,
    UnsupportedProtocolVersion,
    method,
    notification,
)
from .lifecycle import INITIALIZE, INITIALIZED
from .pagination import iterate_pages
from .session import BaseSession
from .types import (
    CallToolRequestParams,
    CallToolResult,
    ClientCapabilities,
    CompleteRequestParams,
    CompleteResult,
    CompletionArgument,
    CompletionContext,
    CreateMessageRequestParams,
    CreateMessageResult,
    GetPromptRequestParams,
    GetPromptResult,
    Implementation,
    InitializeRequestParams,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListRootsResult,
    ListToolsResult,
    LoggingLevel,
    LoggingMessageNotificationParams,
    PaginatedRequestParams,
    Prompt,
    PromptReference,
    ReadResourceRequestParams,
    ReadResourceResult,
    Resource,
    ResourceTemplate,
    ResourceTemplateReference,
    ResourceUpdatedNotificationParams,
    Root,
    RootsCapability,
    ServerCapabilities,
    SetLevelRequestParams,
    SubscribeRequestParams,
    Tool,
    UnsubscribeRequestParams,
)

logger = logging.getLogger(__name__)

type SamplingCallback = Callable[[RequestContext, CreateMessageRequestParams], Awaitable[CreateMessageResult]]
type ListRootsCallback = Callable[[RequestContext], Awaitable[list[Root]]]
type LoggingCallback = Callable[[LoggingMessageNotificationParams], Awaitable[None]]
type ResourceUpdatedCallback = Callable[[str], Awaitable[None]]
type ListChangedCallback = Callable[[str], Awaitable[None]]

DEFAULT_CLIENT_INFO = Implementation(name="mcp-session-engine", version="0.1.0")


class ClientSession(BaseSession):
    """The client side of a session with one MCP server.

    Client capabilities follow from the callbacks given: a sampling callback
    declares `sampling`, a roots callback declares `roots`.

    Args:
        transport: Connected to the server
        client_info: Reported to the server as `clientInfo`
        config: Session tunables
        sampling_callback: Serves `sampling/createMessage`
        list_roots_callback: Serves `roots/list`
        logging_callback: Receives `notifications/message`
        resource_updated_callback: Receives the URI of updated resources
        list_changed_callback: Receives "tools", "resources" or "prompts"
            when the server says that list changed
    """

    role = "client"

    def __init__(
        self,
        transport: JsonRpcTransport,
        *,
        client_info: Implementation | None = None,
        config: SessionConfig | None = None,
        sampling_callback: SamplingCallback | None = None,
        list_roots_callback: ListRootsCallback | None = None,
        logging_callback: LoggingCallback | None = None,
        resource_updated_callback: ResourceUpdatedCallback | None = None,
        list_changed_callback: ListChangedCallback | None = None,
    ):
        self.client_info = client_info or DEFAULT_CLIENT_INFO
        self.server_info: Implementation | None = None
        self.instructions: str | None = None
        self._sampling_callback = sampling_callback
        self._list_roots_callback = list_roots_callback
        self._logging_callback = logging_callback
        self._resource_updated_callback = resource_updated_callback
        self._list_changed_callback = list_changed_callback

        capabilities = ClientCapabilities()
        if sampling_callback is not None:
            capabilities.sampling = {}
        if list_roots_callback is not None:
            capabilities.roots = RootsCapability(listChanged=True)
        super().__init__(transport, local_capabilities=capabilities, config=config)

    @property
    def server_capabilities(self) -> ServerCapabilities | None:
        return self.capabilities.server

    async def initialize(self, timeout: float | None = None) -> InitializeResult:
        """Perform the initialize handshake.

        Offers the preferred protocol version, checks the one the server
        answers with, records both capability sets and sends
        `notifications/initialized`.

        Raises:
            UnsupportedProtocolVersion: If the server answered with a version
                this client doesn't speak. The session is closed.
        """
        self.lifecycle.check_outbound(INITIALIZE, True)
        self.lifecycle.begin_initialize()
        params = InitializeRequestParams(
            protocolVersion=self.config.preferred_protocol_version,
            capabilities=self.capabilities.local,
            clientInfo=self.client_info,
        )
        try:
            res = InitializeResult.model_validate(
                await self.connection.send_request(
                    INITIALIZE,
                    params.model_dump(mode="json", by_alias=True, exclude_none=True),
                    timeout=timeout if timeout is not None else self.config.request_timeout,
                )
            )
            self.lifecycle.accept_version(res.protocolVersion)
        except UnsupportedProtocolVersion as e:
            logger.error("Server chose protocol version %s, closing", e.version)
            await self.connection.close(str(e))
            raise
        except Exception:
            self.lifecycle.reset()
            raise

        self.capabilities.negotiate(res.capabilities)
        self.server_info = res.serverInfo
        self.instructions = res.instructions
        self.lifecycle.mark_operating()
        await self.send_notification(INITIALIZED)
        logger.info(
            "Connected to %s %s using protocol %s",
            res.serverInfo.name,
            res.serverInfo.version,
            res.protocolVersion,
        )
        return res

    # Tools

    async def list_tools(self, cursor: str | None = None) -> ListToolsResult:
        return await self.send_request("tools/list", PaginatedRequestParams(cursor=cursor), ListToolsResult)

    async def iter_tools(self) -> AsyncIterator[Tool]:
        async def fetch(cursor: str | None):
            res = await self.list_tools(cursor)
            return res.tools, res.nextCursor

        async for tool in iterate_pages(fetch):
            yield tool

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        progress_callback: ProgressCallback | None = None,
        cancellation_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> CallToolResult:
        """Call a tool.

        A failing tool is not an exception: check `isError` on the result.
        """
        return await self.send_request(
            "tools/call",
            CallToolRequestParams(name=name, arguments=arguments),
            CallToolResult,
            cancellation_token=cancellation_token,
            progress_callback=progress_callback,
            timeout=timeout,
        )

    # Resources

    async def list_resources(self, cursor: str | None = None) -> ListResourcesResult:
        return await self.send_request(
            "resources/list", PaginatedRequestParams(cursor=cursor), ListResourcesResult
        )

    async def iter_resources(self) -> AsyncIterator[Resource]:
        async def fetch(cursor: str | None):
            res = await self.list_resources(cursor)
            return res.resources, res.nextCursor

        async for resource in iterate_pages(fetch):
            yield resource

    async def list_resource_templates(self, cursor: str | None = None) -> ListResourceTemplatesResult:
        return await self.send_request(
            "resources/templates/list",
            PaginatedRequestParams(cursor=cursor),
            ListResourceTemplatesResult,
        )

    async def iter_resource_templates(self) -> AsyncIterator[ResourceTemplate]:
        async def fetch(cursor: str | None):
            res = await self.list_resource_templates(cursor)
            return res.resourceTemplates, res.nextCursor

        async for template in iterate_pages(fetch):
            yield template

    async def read_resource(self, uri: str) -> ReadResourceResult:
        return await self.send_request(
            "resources/read", ReadResourceRequestParams(uri=uri), ReadResourceResult
        )

    async def subscribe_resource(self, uri: str):
        await self.send_request("resources/subscribe", SubscribeRequestParams(uri=uri))

    async def unsubscribe_resource(self, uri: str):
        await self.send_request("resources/unsubscribe", UnsubscribeRequestParams(uri=uri))

    # Prompts

    async def list_prompts(self, cursor: str | None = None) -> ListPromptsResult:
        return await self.send_request("prompts/list", PaginatedRequestParams(cursor=cursor), ListPromptsResult)

    async def iter_prompts(self) -> AsyncIterator[Prompt]:
        async def fetch(cursor: str | None):
            res = await self.list_prompts(cursor)
            return res.prompts, res.nextCursor

        async for prompt in iterate_pages(fetch):
            yield prompt

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> GetPromptResult:
        return await self.send_request(
            "prompts/get", GetPromptRequestParams(name=name, arguments=arguments), GetPromptResult
        )

    # Utilities

    async def complete(
        self,
        ref: PromptReference | ResourceTemplateReference,
        argument_name: str,
        value: str,
        context_arguments: dict[str, str] | None = None,
    ) -> CompleteResult:
        params = CompleteRequestParams(
            ref=ref,
            argument=CompletionArgument(name=argument_name, value=value),
            context=CompletionContext(arguments=context_arguments) if context_arguments else None,
        )
        return await self.send_request("completion/complete", params, CompleteResult)

    async def set_logging_level(self, level: LoggingLevel):
        await self.send_request("logging/setLevel", SetLevelRequestParams(level=level))

    async def send_roots_list_changed(self):
        await self.send_notification("notifications/roots/list_changed")

    # Requests and notifications from the server

    @method("sampling/createMessage")
    async def _create_message(self, ctx: RequestContext, params: dict[str, Any]) -> CreateMessageResult:
        if self._sampling_callback is None:
            raise JsonRpcException("Sampling is not supported", JSONRPC_METHOD_NOT_FOUND)
        return await self._sampling_callback(ctx, CreateMessageRequestParams.model_validate(params))

    @method("roots/list")
    async def _list_roots(self, ctx: RequestContext, params: dict[str, Any]) -> ListRootsResult:
        if self._list_roots_callback is None:
            raise JsonRpcException("Roots are not supported", JSONRPC_METHOD_NOT_FOUND)
        return ListRootsResult(roots=await self._list_roots_callback(ctx))

    @notification("notifications/message")
    async def _log_message(self, params: dict[str, Any]):
        msg = LoggingMessageNotificationParams.model_validate(params)
        if self._logging_callback is not None:
            await self._logging_callback(msg)
        else:
            logger.info("Server log [%s] %s", msg.level, msg.data, extra={"logger": msg.logger})

    @notification("notifications/resources/updated")
    async def _resource_updated(self, params: dict[str, Any]):
        uri = ResourceUpdatedNotificationParams.model_validate(params).uri
        if self._resource_updated_callback is not None:
            await self._resource_updated_callback(uri)

    async def _list_changed(self, kind: str):
        if self._list_changed_callback is not None:
            await self._list_changed_callback(kind)

    @notification("notifications/tools/list_changed")
    async def _tools_changed(self, params: dict[str, Any]):
        await self._list_changed("tools")

    @notification("notifications/resources/list_changed")
    async def _resources_changed(self, params: dict[str, Any]):
        await self._list_changed("resources")

    @notification("notifications/prompts/list_changed")
    async def _prompts_changed(self, params: dict[str, Any]):
        await self._list_changed("prompts")

    def _on_close(self, reason: JsonRpcException):
        logger.debug("Client session closed: %s", reason)

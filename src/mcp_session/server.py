"""MCP server feature layer.

A `Server` holds what is offered (tools, resources, resource templates,
prompts and a completion handler) and serves it to any number of clients.
Each client connection gets its own `ServerSession`; all sessions share the
server's subscription registry and cursor codec.

Example:
    ```python
    server = Server("calculator", "1.0.0")

    @server.tool()
    async def add(a: int, b: int) -> int:
        "Add two numbers"
        return a + b

    transport = await open_stdio_transport()
    await server.serve(transport)
    ```
"""

import base64
import inspect
import json
import logging
import re
import typing
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

import logfire
from pydantic import BaseModel, ConfigDict, create_model

from .config import SessionConfig
from .jsonrpc import (
    JSONRPC_INVALID_PARAMS,
    JsonRpcException,
    JsonRpcTransport,
    RequestContext,
    method,
    notification,
)
from .pagination import CursorCodec, paginate
from .session import BaseSession
from .subscriptions import SubscriptionRegistry
from .types import (
    LOGGING_LEVELS,
    BlobResourceContents,
    CallToolRequestParams,
    CallToolResult,
    CompleteRequestParams,
    CompleteResult,
    Completion,
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
    PromptArgument,
    PromptMessage,
    PromptsCapability,
    ReadResourceRequestParams,
    ReadResourceResult,
    Resource,
    ResourcesCapability,
    ResourceTemplate,
    ResourceUpdatedNotificationParams,
    ServerCapabilities,
    SetLevelRequestParams,
    SubscribeRequestParams,
    TextContent,
    TextResourceContents,
    Tool,
    ToolAnnotations,
    ToolsCapability,
    UnsubscribeRequestParams,
)

logger = logging.getLogger(__name__)

RESOURCE_NOT_FOUND = -32002

type ListKind = Literal["tools", "resources", "prompts"]
type ResourceReader = Callable[..., Awaitable[Any]]
type CompletionHandler = Callable[..., Awaitable[list[str] | Completion]]


@dataclass
class _Handler:
    fn: Callable[..., Awaitable[Any]]
    takes_ctx: bool

    async def __call__(self, ctx: RequestContext, **kwargs: Any) -> Any:
        if self.takes_ctx:
            return await self.fn(ctx, **kwargs)
        return await self.fn(**kwargs)


@dataclass
class _ToolEntry:
    tool: Tool
    handler: _Handler
    arguments: type[BaseModel]


@dataclass
class _ResourceEntry:
    resource: Resource
    handler: _Handler


@dataclass
class _TemplateEntry:
    template: ResourceTemplate
    pattern: re.Pattern[str]
    handler: _Handler


@dataclass
class _PromptEntry:
    prompt: Prompt
    handler: _Handler


def _is_context_param(param: inspect.Parameter, hints: dict[str, Any]) -> bool:
    return hints.get(param.name) is RequestContext or param.name == "ctx"


def _make_handler(fn: Callable[..., Any], kind: str) -> tuple[_Handler, list[inspect.Parameter], dict[str, Any]]:
    if not inspect.iscoroutinefunction(fn):
        raise ValueError(f"{kind} handlers must be async functions")
    hints = typing.get_type_hints(fn)
    params = list(inspect.signature(fn).parameters.values())
    takes_ctx = bool(params) and _is_context_param(params[0], hints)
    if takes_ctx:
        params = params[1:]
    return _Handler(fn, takes_ctx), params, hints


def _arguments_model(name: str, params: list[inspect.Parameter], hints: dict[str, Any]) -> type[BaseModel]:
    fields: dict[str, Any] = {}
    for param in params:
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            raise ValueError(f"Tool {name} can't take *args or **kwargs")
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param.name] = (hints.get(param.name, Any), default)
    return create_model(f"{name}_arguments", __config__=ConfigDict(extra="forbid"), **fields)


def _compile_template(uri_template: str) -> re.Pattern[str]:
    parts = re.split(r"\{(\w+)\}", uri_template)
    regex = ""
    for i, part in enumerate(parts):
        # Odd entries are the variable names captured by the split
        regex += f"(?P<{part}>[^/]+)" if i % 2 else re.escape(part)
    return re.compile(f"^{regex}$")


def _tool_result(res: Any) -> CallToolResult:
    match res:
        case CallToolResult():
            return res
        case str():
            return CallToolResult(content=[TextContent(text=res)])
        case BaseModel():
            data = res.model_dump(mode="json")
            return CallToolResult(content=[TextContent(text=json.dumps(data))], structuredContent=data)
        case dict():
            return CallToolResult(content=[TextContent(text=json.dumps(res))], structuredContent=res)
        case list() if all(isinstance(item, BaseModel) and hasattr(item, "type") for item in res):
            return CallToolResult(content=res)
        case None:
            return CallToolResult(content=[])
        case _:
            return CallToolResult(content=[TextContent(text=json.dumps(res) if isinstance(res, list) else str(res))])


def _resource_contents(uri: str, mime_type: str | None, res: Any) -> ReadResourceResult:
    match res:
        case ReadResourceResult():
            return res
        case str():
            return ReadResourceResult(
                contents=[TextResourceContents(uri=uri, mimeType=mime_type or "text/plain", text=res)]
            )
        case bytes():
            return ReadResourceResult(
                contents=[
                    BlobResourceContents(
                        uri=uri,
                        mimeType=mime_type or "application/octet-stream",
                        blob=base64.b64encode(res).decode(),
                    )
                ]
            )
        case list():
            return ReadResourceResult(contents=res)
        case _:
            raise TypeError(f"Resource readers must return str, bytes or contents, not {type(res).__name__}")


def _prompt_result(description: str | None, res: Any) -> GetPromptResult:
    match res:
        case GetPromptResult():
            return res
        case str():
            return GetPromptResult(
                description=description,
                messages=[PromptMessage(role="user", content=TextContent(text=res))],
            )
        case list():
            return GetPromptResult(description=description, messages=res)
        case _:
            raise TypeError(f"Prompts must return str or messages, not {type(res).__name__}")


class Server:
    """What an MCP server offers, shared by all of its sessions.

    Capabilities are computed from what is registered when a session is
    created, so register everything before serving.

    Args:
        name (str): Reported as `serverInfo.name`
        version (str): Reported as `serverInfo.version`
        instructions (str | None): Usage hints returned from `initialize`
        config (SessionConfig | None): Session tunables
        cursor_secret (bytes | None): Key for signing pagination cursors
        enable_logging (bool): Whether to declare the logging capability
    """

    def __init__(
        self,
        name: str,
        version: str = "0.1.0",
        *,
        instructions: str | None = None,
        config: SessionConfig | None = None,
        cursor_secret: bytes | None = None,
        enable_logging: bool = True,
    ):
        self.info = Implementation(name=name, version=version)
        self.instructions = instructions
        self.config = config or SessionConfig()
        self.subscriptions = SubscriptionRegistry()
        self.cursors = CursorCodec(cursor_secret)
        self.enable_logging = enable_logging
        self.on_roots_changed: Callable[["ServerSession"], Awaitable[None]] | None = None
        self._tools: dict[str, _ToolEntry] = {}
        self._resources: dict[str, _ResourceEntry] = {}
        self._templates: dict[str, _TemplateEntry] = {}
        self._prompts: dict[str, _PromptEntry] = {}
        self._completion: _Handler | None = None
        self._sessions: set[ServerSession] = set()

    @property
    def sessions(self) -> list["ServerSession"]:
        return list(self._sessions)

    def capabilities(self) -> ServerCapabilities:
        caps = ServerCapabilities()
        if self.enable_logging:
            caps.logging = {}
        if self._completion is not None:
            caps.completions = {}
        if self._tools:
            caps.tools = ToolsCapability(listChanged=True)
        if self._resources or self._templates:
            caps.resources = ResourcesCapability(subscribe=True, listChanged=True)
        if self._prompts:
            caps.prompts = PromptsCapability(listChanged=True)
        return caps

    # Registration

    def tool(
        self,
        name: str | None = None,
        *,
        title: str | None = None,
        description: str | None = None,
        annotations: ToolAnnotations | None = None,
    ):
        """Register an async function as a tool.

        The input schema is generated from the function's signature and
        incoming arguments are validated against it. A first parameter
        named `ctx` (or annotated `RequestContext`) receives the request
        context instead of an argument.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """

        def decorator(fn):
            tool_name = name or fn.__name__
            if tool_name in self._tools:
                raise ValueError(f"Tool {tool_name} is already registered")
            handler, params, hints = _make_handler(fn, "Tool")
            arguments = _arguments_model(tool_name, params, hints)
            schema = arguments.model_json_schema()
            schema.pop("title", None)
            self._tools[tool_name] = _ToolEntry(
                Tool(
                    name=tool_name,
                    title=title,
                    description=description or inspect.getdoc(fn),
                    inputSchema=schema,
                    annotations=annotations,
                ),
                handler,
                arguments,
            )
            return fn

        return decorator

    def remove_tool(self, name: str):
        del self._tools[name]

    def add_resource(self, resource: Resource, reader: ResourceReader):
        if resource.uri in self._resources:
            raise ValueError(f"Resource {resource.uri} is already registered")
        handler, _, _ = _make_handler(reader, "Resource")
        self._resources[resource.uri] = _ResourceEntry(resource, handler)

    def remove_resource(self, uri: str):
        del self._resources[uri]

    def resource(
        self,
        uri: str,
        *,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        mime_type: str | None = None,
    ):
        """Register an async function returning the contents of `uri`.

        The function returns `str` for text, `bytes` for binary contents, or
        a list of resource contents.
        """

        def decorator(fn):
            self.add_resource(
                Resource(
                    uri=uri,
                    name=name or fn.__name__,
                    title=title,
                    description=description or inspect.getdoc(fn),
                    mimeType=mime_type,
                ),
                fn,
            )
            return fn

        return decorator

    def resource_template(
        self,
        uri_template: str,
        *,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        mime_type: str | None = None,
    ):
        """Register a reader for every URI matching `uri_template`.

        Template variables are written `{name}`, match one path segment,
        and are passed to the function as keyword arguments.
        """

        def decorator(fn):
            if uri_template in self._templates:
                raise ValueError(f"Resource template {uri_template} is already registered")
            handler, _, _ = _make_handler(fn, "Resource template")
            self._templates[uri_template] = _TemplateEntry(
                ResourceTemplate(
                    uriTemplate=uri_template,
                    name=name or fn.__name__,
                    title=title,
                    description=description or inspect.getdoc(fn),
                    mimeType=mime_type,
                ),
                _compile_template(uri_template),
                handler,
            )
            return fn

        return decorator

    def prompt(self, name: str | None = None, *, title: str | None = None, description: str | None = None):
        """Register an async function as a prompt.

        Its parameters become the prompt's arguments; those without a default
        are required.
        """

        def decorator(fn):
            prompt_name = name or fn.__name__
            if prompt_name in self._prompts:
                raise ValueError(f"Prompt {prompt_name} is already registered")
            handler, params, _ = _make_handler(fn, "Prompt")
            self._prompts[prompt_name] = _PromptEntry(
                Prompt(
                    name=prompt_name,
                    title=title,
                    description=description or inspect.getdoc(fn),
                    arguments=[
                        PromptArgument(name=p.name, required=p.default is inspect.Parameter.empty)
                        for p in params
                    ],
                ),
                handler,
            )
            return fn

        return decorator

    def remove_prompt(self, name: str):
        del self._prompts[name]

    def completion(self, fn: CompletionHandler):
        """Register the handler for `completion/complete`.

        It is called with `ref`, `argument` and `context` and returns the
        candidate values.
        """
        if self._completion is not None:
            raise ValueError("A completion handler is already registered")
        self._completion, _, _ = _make_handler(fn, "Completion")
        return fn

    # Lookups used by the sessions

    def list_tools(self) -> list[Tool]:
        return [entry.tool for entry in self._tools.values()]

    def list_resources(self) -> list[Resource]:
        return [entry.resource for entry in self._resources.values()]

    def list_resource_templates(self) -> list[ResourceTemplate]:
        return [entry.template for entry in self._templates.values()]

    def list_prompts(self) -> list[Prompt]:
        return [entry.prompt for entry in self._prompts.values()]

    async def call_tool(self, ctx: RequestContext, name: str, arguments: dict[str, Any]) -> CallToolResult:
        entry = self._tools.get(name)
        if entry is None:
            raise JsonRpcException(f"Unknown tool: {name}", JSONRPC_INVALID_PARAMS)
        args = entry.arguments.model_validate(arguments)

        with logfire.span("tools/call {tool}", tool=name):
            try:
                res = await entry.handler(ctx, **{field: getattr(args, field) for field in type(args).model_fields})
            except JsonRpcException:
                raise
            except Exception as e:
                logger.warning("Tool %s failed", name, exc_info=True)
                return CallToolResult(
                    content=[TextContent(text=f"Tool {name} failed: {type(e).__name__}: {e}")],
                    isError=True,
                )
        return _tool_result(res)

    async def read_resource(self, ctx: RequestContext, uri: str) -> ReadResourceResult:
        entry = self._resources.get(uri)
        if entry is not None:
            return _resource_contents(uri, entry.resource.mimeType, await entry.handler(ctx))

        for template in self._templates.values():
            match = template.pattern.match(uri)
            if match is not None:
                res = await template.handler(ctx, **match.groupdict())
                return _resource_contents(uri, template.template.mimeType, res)

        raise JsonRpcException(f"Resource not found: {uri}", RESOURCE_NOT_FOUND, {"uri": uri})

    async def get_prompt(self, ctx: RequestContext, name: str, arguments: dict[str, str]) -> GetPromptResult:
        entry = self._prompts.get(name)
        if entry is None:
            raise JsonRpcException(f"Unknown prompt: {name}", JSONRPC_INVALID_PARAMS)

        known = {arg.name: arg for arg in entry.prompt.arguments or ()}
        unknown = set(arguments) - set(known)
        if unknown:
            raise JsonRpcException(f"Unknown arguments for prompt {name}: {sorted(unknown)}", JSONRPC_INVALID_PARAMS)
        missing = [arg for arg, spec in known.items() if spec.required and arg not in arguments]
        if missing:
            raise JsonRpcException(f"Missing arguments for prompt {name}: {missing}", JSONRPC_INVALID_PARAMS)

        return _prompt_result(entry.prompt.description, await entry.handler(ctx, **arguments))

    async def complete(self, ctx: RequestContext, params: CompleteRequestParams) -> CompleteResult:
        if self._completion is None:
            return CompleteResult(completion=Completion(values=[]))

        res = await self._completion(
            ctx,
            ref=params.ref,
            argument=params.argument,
            context=params.context or CompletionContext(),
        )
        if isinstance(res, Completion):
            return CompleteResult(completion=res)
        return CompleteResult(
            completion=Completion(values=res[:100], total=len(res), hasMore=len(res) > 100)
        )

    # Fan-out to connected clients

    async def notify_resource_updated(self, uri: str) -> int:
        """Notify every session subscribed to `uri`. Returns how many were told."""
        return await self.subscriptions.notify_updated(uri)

    async def notify_list_changed(self, kind: ListKind):
        """Tell every operating session that a list changed."""
        for session in self.sessions:
            if session.lifecycle.is_operating:
                await session.send_list_changed(kind)

    # Serving

    def create_session(self, transport: JsonRpcTransport) -> "ServerSession":
        session = ServerSession(self, transport)
        self._sessions.add(session)
        return session

    async def serve(self, transport: JsonRpcTransport):
        """Serve one client until its connection closes."""
        session = self.create_session(transport)
        await session.run()

    def _session_closed(self, session: "ServerSession"):
        self._sessions.discard(session)
        dropped = self.subscriptions.unsubscribe_all(session)
        if dropped:
            logger.debug("Dropped %d subscriptions of a closed session", dropped)


class ServerSession(BaseSession):
    """The server side of one client connection."""

    role = "server"

    def __init__(self, server: Server, transport: JsonRpcTransport):
        self.server = server
        self.client_info: Implementation | None = None
        self.log_level: LoggingLevel | None = None
        super().__init__(transport, local_capabilities=server.capabilities(), config=server.config)

    @method("initialize")
    async def _handle_initialize(self, ctx: RequestContext, params: dict[str, Any]) -> InitializeResult:
        try:
            req = InitializeRequestParams.model_validate(params)
            version = self.lifecycle.negotiate(req.protocolVersion)
            self.capabilities.negotiate(req.capabilities)
        except Exception:
            self.lifecycle.reset()
            raise

        self.client_info = req.clientInfo
        logger.info(
            "Client %s %s connected using protocol %s",
            req.clientInfo.name,
            req.clientInfo.version,
            version,
        )
        return InitializeResult(
            protocolVersion=version,
            capabilities=self.capabilities.local,
            serverInfo=self.server.info,
            instructions=self.server.instructions,
        )

    def _paginate_params(self, params: dict[str, Any]) -> str | None:
        return PaginatedRequestParams.model_validate(params).cursor

    @method("tools/list")
    async def _list_tools(self, ctx: RequestContext, params: dict[str, Any]) -> ListToolsResult:
        tools, next_cursor = paginate(
            self.server.list_tools(),
            self._paginate_params(params),
            kind="tools",
            key=lambda tool: tool.name,
            page_size=self.config.page_size,
            codec=self.server.cursors,
        )
        return ListToolsResult(tools=tools, nextCursor=next_cursor)

    @method("tools/call")
    async def _call_tool(self, ctx: RequestContext, params: dict[str, Any]) -> CallToolResult:
        req = CallToolRequestParams.model_validate(params)
        return await self.server.call_tool(ctx, req.name, req.arguments or {})

    @method("resources/list")
    async def _list_resources(self, ctx: RequestContext, params: dict[str, Any]) -> ListResourcesResult:
        resources, next_cursor = paginate(
            self.server.list_resources(),
            self._paginate_params(params),
            kind="resources",
            key=lambda resource: resource.uri,
            page_size=self.config.page_size,
            codec=self.server.cursors,
        )
        return ListResourcesResult(resources=resources, nextCursor=next_cursor)

    @method("resources/templates/list")
    async def _list_resource_templates(
        self, ctx: RequestContext, params: dict[str, Any]
    ) -> ListResourceTemplatesResult:
        templates, next_cursor = paginate(
            self.server.list_resource_templates(),
            self._paginate_params(params),
            kind="resources/templates",
            key=lambda template: template.uriTemplate,
            page_size=self.config.page_size,
            codec=self.server.cursors,
        )
        return ListResourceTemplatesResult(resourceTemplates=templates, nextCursor=next_cursor)

    @method("resources/read")
    async def _read_resource(self, ctx: RequestContext, params: dict[str, Any]) -> ReadResourceResult:
        req = ReadResourceRequestParams.model_validate(params)
        return await self.server.read_resource(ctx, req.uri)

    @method("resources/subscribe")
    async def _subscribe(self, ctx: RequestContext, params: dict[str, Any]) -> dict[str, Any]:
        req = SubscribeRequestParams.model_validate(params)
        self.server.subscriptions.subscribe(req.uri, self)
        return {}

    @method("resources/unsubscribe")
    async def _unsubscribe(self, ctx: RequestContext, params: dict[str, Any]) -> dict[str, Any]:
        req = UnsubscribeRequestParams.model_validate(params)
        self.server.subscriptions.unsubscribe(req.uri, self)
        return {}

    @method("prompts/list")
    async def _list_prompts(self, ctx: RequestContext, params: dict[str, Any]) -> ListPromptsResult:
        prompts, next_cursor = paginate(
            self.server.list_prompts(),
            self._paginate_params(params),
            kind="prompts",
            key=lambda prompt: prompt.name,
            page_size=self.config.page_size,
            codec=self.server.cursors,
        )
        return ListPromptsResult(prompts=prompts, nextCursor=next_cursor)

    @method("prompts/get")
    async def _get_prompt(self, ctx: RequestContext, params: dict[str, Any]) -> GetPromptResult:
        req = GetPromptRequestParams.model_validate(params)
        return await self.server.get_prompt(ctx, req.name, req.arguments or {})

    @method("logging/setLevel")
    async def _set_level(self, ctx: RequestContext, params: dict[str, Any]) -> dict[str, Any]:
        self.log_level = SetLevelRequestParams.model_validate(params).level
        logger.debug("Client log level set to %s", self.log_level)
        return {}

    @method("completion/complete")
    async def _complete(self, ctx: RequestContext, params: dict[str, Any]) -> CompleteResult:
        return await self.server.complete(ctx, CompleteRequestParams.model_validate(params))

    @notification("notifications/initialized")
    async def _handle_initialized(self, params: dict[str, Any]):
        logger.debug("Session is operating")

    @notification("notifications/roots/list_changed")
    async def _roots_changed(self, params: dict[str, Any]):
        if self.server.on_roots_changed is not None:
            await self.server.on_roots_changed(self)

    # Requests and notifications to the client

    async def create_message(
        self, params: CreateMessageRequestParams, *, timeout: float | None = None
    ) -> CreateMessageResult:
        """Ask the client to sample from its LLM."""
        return await self.send_request("sampling/createMessage", params, CreateMessageResult, timeout=timeout)

    async def list_roots(self) -> ListRootsResult:
        return await self.send_request("roots/list", None, ListRootsResult)

    async def send_log_message(self, level: LoggingLevel, data: Any, logger_name: str | None = None):
        """Send a log message, unless it is below the level the client asked for."""
        if self.log_level is not None and LOGGING_LEVELS.index(level) < LOGGING_LEVELS.index(self.log_level):
            return
        await self.send_notification(
            "notifications/message",
            LoggingMessageNotificationParams(level=level, data=data, logger=logger_name),
        )

    async def send_resource_updated(self, uri: str):
        await self.send_notification(
            "notifications/resources/updated", ResourceUpdatedNotificationParams(uri=uri)
        )

    async def send_list_changed(self, kind: ListKind):
        await self.send_notification(f"notifications/{kind}/list_changed")

    def _on_close(self, reason: JsonRpcException):
        self.server._session_closed(self)


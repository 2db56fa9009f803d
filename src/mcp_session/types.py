"""Typed payloads for every MCP method.

Each request and notification has a params model and, for requests, a
result model. Field names follow the wire format (camelCase). Unknown
fields are kept so that newer peers can extend payloads without breaking
validation.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]
"""Protocol revisions this runtime speaks, newest first."""

Cursor = str
Role = Literal["user", "assistant"]
LoggingLevel = Literal[
    "debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"
]

LOGGING_LEVELS: list[str] = [
    "debug",
    "info",
    "notice",
    "warning",
    "error",
    "critical",
    "alert",
    "emergency",
]
"""Syslog severities in increasing order."""


class McpModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Implementation(McpModel):
    """Name and version of an MCP implementation."""

    name: str
    version: str
    title: str | None = None


# Capabilities


class ListChangedCapability(McpModel):
    listChanged: bool | None = None
    """Whether the peer sends notifications when the list changes."""


class RootsCapability(ListChangedCapability):
    pass


class PromptsCapability(ListChangedCapability):
    pass


class ToolsCapability(ListChangedCapability):
    pass


class ResourcesCapability(ListChangedCapability):
    subscribe: bool | None = None
    """Whether clients can subscribe to resource updates."""


class ClientCapabilities(McpModel):
    """Capabilities a client may declare. Absent means unsupported."""

    experimental: dict[str, dict[str, Any]] | None = None
    roots: RootsCapability | None = None
    sampling: dict[str, Any] | None = None
    elicitation: dict[str, Any] | None = None


class ServerCapabilities(McpModel):
    """Capabilities a server may declare. Absent means unsupported."""

    experimental: dict[str, dict[str, Any]] | None = None
    logging: dict[str, Any] | None = None
    completions: dict[str, Any] | None = None
    prompts: PromptsCapability | None = None
    resources: ResourcesCapability | None = None
    tools: ToolsCapability | None = None


# Lifecycle


class InitializeRequestParams(McpModel):
    protocolVersion: str
    capabilities: ClientCapabilities
    clientInfo: Implementation


class InitializeResult(McpModel):
    protocolVersion: str
    capabilities: ServerCapabilities
    serverInfo: Implementation
    instructions: str | None = None


class CancelledNotificationParams(McpModel):
    requestId: str | int
    reason: str | None = None


class ProgressNotificationParams(McpModel):
    progressToken: str | int
    progress: float
    total: float | None = None
    message: str | None = None


# Pagination


class PaginatedRequestParams(McpModel):
    cursor: Cursor | None = None


class PaginatedResult(McpModel):
    nextCursor: Cursor | None = None


# Content


class Annotations(McpModel):
    audience: list[Role] | None = None
    priority: float | None = Field(default=None, ge=0, le=1)


class TextContent(McpModel):
    type: Literal["text"] = "text"
    text: str
    annotations: Annotations | None = None


class ImageContent(McpModel):
    type: Literal["image"] = "image"
    data: str
    """Base64-encoded image data."""
    mimeType: str
    annotations: Annotations | None = None


class AudioContent(McpModel):
    type: Literal["audio"] = "audio"
    data: str
    mimeType: str
    annotations: Annotations | None = None


class ResourceContents(McpModel):
    uri: str
    mimeType: str | None = None


class TextResourceContents(ResourceContents):
    text: str


class BlobResourceContents(ResourceContents):
    blob: str
    """Base64-encoded binary data."""


class EmbeddedResource(McpModel):
    type: Literal["resource"] = "resource"
    resource: TextResourceContents | BlobResourceContents
    annotations: Annotations | None = None


Content = Annotated[
    TextContent | ImageContent | AudioContent | EmbeddedResource,
    Field(discriminator="type"),
]

SamplingContent = Annotated[
    TextContent | ImageContent | AudioContent,
    Field(discriminator="type"),
]


# Resources


class Resource(McpModel):
    uri: str
    name: str
    title: str | None = None
    description: str | None = None
    mimeType: str | None = None
    size: int | None = None
    annotations: Annotations | None = None


class ResourceTemplate(McpModel):
    uriTemplate: str
    """RFC 6570 URI template, e.g. `file:///{path}`."""
    name: str
    title: str | None = None
    description: str | None = None
    mimeType: str | None = None
    annotations: Annotations | None = None


class ListResourcesResult(PaginatedResult):
    resources: list[Resource]


class ListResourceTemplatesResult(PaginatedResult):
    resourceTemplates: list[ResourceTemplate]


class ReadResourceRequestParams(McpModel):
    uri: str


class ReadResourceResult(McpModel):
    contents: list[TextResourceContents | BlobResourceContents]


class SubscribeRequestParams(McpModel):
    uri: str


class UnsubscribeRequestParams(McpModel):
    uri: str


class ResourceUpdatedNotificationParams(McpModel):
    uri: str


# Prompts


class PromptArgument(McpModel):
    name: str
    description: str | None = None
    required: bool | None = None


class Prompt(McpModel):
    name: str
    title: str | None = None
    description: str | None = None
    arguments: list[PromptArgument] | None = None


class ListPromptsResult(PaginatedResult):
    prompts: list[Prompt]


class GetPromptRequestParams(McpModel):
    name: str
    arguments: dict[str, str] | None = None


class PromptMessage(McpModel):
    role: Role
    content: Content


class GetPromptResult(McpModel):
    description: str | None = None
    messages: list[PromptMessage]


# Tools


class ToolAnnotations(McpModel):
    title: str | None = None
    readOnlyHint: bool | None = None
    destructiveHint: bool | None = None
    idempotentHint: bool | None = None
    openWorldHint: bool | None = None


class Tool(McpModel):
    name: str
    title: str | None = None
    description: str | None = None
    inputSchema: dict[str, Any]
    outputSchema: dict[str, Any] | None = None
    annotations: ToolAnnotations | None = None


class ListToolsResult(PaginatedResult):
    tools: list[Tool]


class CallToolRequestParams(McpModel):
    name: str
    arguments: dict[str, Any] | None = None


class CallToolResult(McpModel):
    """Result of a tool call.

    Failures of the tool itself are reported here with `isError` set, never
    as a JSON-RPC error, so that the model can see and react to them.
    """

    content: list[Content]
    structuredContent: dict[str, Any] | None = None
    isError: bool = False


# Sampling


class SamplingMessage(McpModel):
    role: Role
    content: SamplingContent


class ModelHint(McpModel):
    name: str | None = None


class ModelPreferences(McpModel):
    hints: list[ModelHint] | None = None
    costPriority: float | None = Field(default=None, ge=0, le=1)
    speedPriority: float | None = Field(default=None, ge=0, le=1)
    intelligencePriority: float | None = Field(default=None, ge=0, le=1)


class CreateMessageRequestParams(McpModel):
    messages: list[SamplingMessage]
    modelPreferences: ModelPreferences | None = None
    systemPrompt: str | None = None
    includeContext: Literal["none", "thisServer", "allServers"] | None = None
    temperature: float | None = None
    maxTokens: int
    stopSequences: list[str] | None = None
    metadata: dict[str, Any] | None = None


class CreateMessageResult(McpModel):
    model: str
    stopReason: str | None = None
    """Usually "endTurn", "stopSequence" or "maxTokens"."""
    role: Role
    content: SamplingContent


# Roots


class Root(McpModel):
    uri: str
    """Must be a `file://` URI."""
    name: str | None = None


class ListRootsResult(McpModel):
    roots: list[Root]


# Logging


class SetLevelRequestParams(McpModel):
    level: LoggingLevel


class LoggingMessageNotificationParams(McpModel):
    level: LoggingLevel
    logger: str | None = None
    data: Any


# Completion


class PromptReference(McpModel):
    type: Literal["ref/prompt"] = "ref/prompt"
    name: str


class ResourceTemplateReference(McpModel):
    type: Literal["ref/resource"] = "ref/resource"
    uri: str


class CompletionArgument(McpModel):
    name: str
    value: str


class CompletionContext(McpModel):
    arguments: dict[str, str] | None = None


class CompleteRequestParams(McpModel):
    ref: Annotated[PromptReference | ResourceTemplateReference, Field(discriminator="type")]
    argument: CompletionArgument
    context: CompletionContext | None = None


class Completion(McpModel):
    values: list[str] = Field(max_length=100)
    total: int | None = None
    hasMore: bool | None = None


class CompleteResult(McpModel):
    completion: Completion

"""JSON-RPC 2.0 Message Type Definitions

This module defines the core message types exchanged by an MCP session.
All types are defined using Python's TypedDict so that decoded frames stay
plain dictionaries while still being statically typed and validated.

The JSON-RPC 2.0 specification defines four types of messages:
1. Request - A call to a method that requires a response
2. Notification - A one-way message that doesn't require a response
3. Success Response - A response containing the result of a method call
4. Error Response - A response indicating an error occurred

MCP narrows JSON-RPC in two ways: request ids may not be null, and params
and results are always JSON objects.

References:
    JSON-RPC 2.0 Specification: https://www.jsonrpc.org/specification
"""

from typing import Any, Literal, NotRequired, TypedDict

RequestId = str | int
"""Identifier of a request. Never null for MCP requests."""

ProgressToken = str | int
"""Opaque token used to associate progress notifications with a request."""


class JsonRpcNotification(TypedDict):
    """A JSON-RPC notification message.

    Notifications are one-way messages that do not require a response.
    They are similar to requests but do not include an id field.

    Fields:
        jsonrpc: Must be exactly "2.0"
        method: The name of the method to be invoked
        params: Optional named parameters
    """

    jsonrpc: Literal["2.0"]
    method: str
    params: NotRequired[dict[str, Any]]


class JsonRpcRequest(TypedDict):
    """A JSON-RPC request message.

    Requests are messages that require a response. The response will
    contain the same id as the request.

    Fields:
        jsonrpc: Must be exactly "2.0"
        method: The name of the method to be invoked
        params: Optional named parameters
        id: Request identifier that will be echoed back in the response
    """

    jsonrpc: Literal["2.0"]
    method: str
    params: NotRequired[dict[str, Any]]
    id: RequestId


class JsonRpcResult(TypedDict):
    """A JSON-RPC success response message.

    Fields:
        jsonrpc: Must be exactly "2.0"
        result: The result of the method call
        id: The id from the original request
    """

    jsonrpc: Literal["2.0"]
    result: dict[str, Any]
    id: RequestId


class JsonRpcError(TypedDict):
    """A JSON-RPC error object.

    Fields:
        code: The error code (see error code constants below)
        message: A short description of the error
        data: Optional additional error information
    """

    code: int
    message: str
    data: NotRequired[Any]


class JsonRpcErrorResponse(TypedDict):
    """A JSON-RPC error response message.

    Fields:
        jsonrpc: Must be exactly "2.0"
        error: The error that occurred
        id: The id from the original request, or null if the id couldn't be determined
    """

    jsonrpc: Literal["2.0"]
    error: JsonRpcError
    id: RequestId | None


JsonRpcMessage = JsonRpcRequest | JsonRpcNotification | JsonRpcResult | JsonRpcErrorResponse
"""Union type of all possible JSON-RPC message types."""


# Standard JSON-RPC 2.0 error codes
JSONRPC_PARSE_ERROR = -32700
"""Invalid JSON was received."""

JSONRPC_INVALID_REQUEST = -32600
"""The JSON sent is not a valid Request object, or is not legal right now."""

JSONRPC_METHOD_NOT_FOUND = -32601
"""The method does not exist / is not available."""

JSONRPC_INVALID_PARAMS = -32602
"""Invalid method parameter(s)."""

JSONRPC_INTERNAL_ERROR = -32603
"""Internal JSON-RPC error."""

# Implementation-defined codes (server error band)
CONNECTION_CLOSED = -32000
"""The connection was closed before a response arrived."""

REQUEST_TIMEOUT = -32001
"""No response arrived within the configured timeout."""

REQUEST_CANCELLED = -32800
"""The request was abandoned locally. Never sent on the wire."""


def make_request(id: RequestId, method: str, params: dict[str, Any] | None = None) -> JsonRpcRequest:
    if params is not None:
        return JsonRpcRequest(jsonrpc="2.0", id=id, method=method, params=params)
    return JsonRpcRequest(jsonrpc="2.0", id=id, method=method)


def make_notification(method: str, params: dict[str, Any] | None = None) -> JsonRpcNotification:
    if params is not None:
        return JsonRpcNotification(jsonrpc="2.0", method=method, params=params)
    return JsonRpcNotification(jsonrpc="2.0", method=method)


def is_request(msg: JsonRpcMessage) -> bool:
    return "method" in msg and "id" in msg


def is_notification(msg: JsonRpcMessage) -> bool:
    return "method" in msg and "id" not in msg


def is_response(msg: JsonRpcMessage) -> bool:
    return "result" in msg or "error" in msg

from .cancellation import CancellationToken, ProgressCallback, ProgressTracker
from .codec import decode, encode
from .connection import JsonRpcConnection, RequestContext, method, notification
from .correlation import CorrelationTable, PendingRequest
from .exceptions import (
    CapabilityError,
    ConnectionClosedError,
    JsonRpcException,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
    UnsupportedProtocolVersion,
)
from .messages import (
    CONNECTION_CLOSED,
    JSONRPC_INTERNAL_ERROR,
    JSONRPC_INVALID_PARAMS,
    JSONRPC_INVALID_REQUEST,
    JSONRPC_METHOD_NOT_FOUND,
    JSONRPC_PARSE_ERROR,
    REQUEST_CANCELLED,
    REQUEST_TIMEOUT,
    JsonRpcError,
    JsonRpcErrorResponse,
    JsonRpcMessage,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResult,
    ProgressToken,
    RequestId,
)
from .transport import (
    STREAM_LIMIT,
    JsonRpcLineTransport,
    JsonRpcStreamTransport,
    JsonRpcTransport,
    MemoryTransport,
    create_memory_transport_pair,
    open_stdio_transport,
    spawn_stdio_transport,
)

__all__ = (
    "STREAM_LIMIT",
    "CancellationToken",
    "ProgressCallback",
    "ProgressTracker",
    "decode",
    "encode",
    "JsonRpcConnection",
    "RequestContext",
    "method",
    "notification",
    "CorrelationTable",
    "PendingRequest",
    "CapabilityError",
    "ConnectionClosedError",
    "JsonRpcException",
    "ProtocolError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "UnsupportedProtocolVersion",
    "CONNECTION_CLOSED",
    "JSONRPC_INTERNAL_ERROR",
    "JSONRPC_INVALID_PARAMS",
    "JSONRPC_INVALID_REQUEST",
    "JSONRPC_METHOD_NOT_FOUND",
    "JSONRPC_PARSE_ERROR",
    "REQUEST_CANCELLED",
    "REQUEST_TIMEOUT",
    "JsonRpcError",
    "JsonRpcErrorResponse",
    "JsonRpcMessage",
    "JsonRpcNotification",
    "JsonRpcRequest",
    "JsonRpcResult",
    "ProgressToken",
    "RequestId",
    "JsonRpcLineTransport",
    "JsonRpcStreamTransport",
    "JsonRpcTransport",
    "MemoryTransport",
    "create_memory_transport_pair",
    "open_stdio_transport",
    "spawn_stdio_transport",
)

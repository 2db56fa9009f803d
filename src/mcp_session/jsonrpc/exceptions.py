"""Exception hierarchy shared by the JSON-RPC layer and the MCP session layer."""

from typing import Any

from .messages import (
    CONNECTION_CLOSED,
    JSONRPC_INVALID_REQUEST,
    REQUEST_CANCELLED,
    REQUEST_TIMEOUT,
    JsonRpcError,
    RequestId,
)


class JsonRpcException(Exception):
    """Exception raised for JSON-RPC specific errors.

    This exception class represents JSON-RPC protocol errors and can be
    converted to and from JSON-RPC error objects. Handlers raise it to send
    a specific error response; callers receive it when the peer answers
    with an error.

    Args:
        message (str): A human-readable error description
        code (int): The JSON-RPC error code (see messages.py for standard codes)
        data (Any): Optional additional error data
        request_id (RequestId | None): Id of the offending request, when known

    Example:
        ```python
        try:
            result = await session.call_tool("add", {"a": 1, "b": 2})
        except JsonRpcException as e:
            if e.code == JSONRPC_METHOD_NOT_FOUND:
                print(f"Method not found: {e}")
            else:
                print(f"RPC error {e.code}: {e}")
        ```
    """

    def __init__(
        self,
        message: str,
        code: int,
        data: Any = None,
        *,
        request_id: RequestId | None = None,
    ):
        super(JsonRpcException, self).__init__(message)
        self.code = code
        self.data = data
        self.request_id = request_id

    def to_err(self) -> JsonRpcError:
        """Convert the exception to a JSON-RPC error object.

        Returns:
            JsonRpcError: The error object for the JSON-RPC response
        """
        if self.data is not None:
            return JsonRpcError(code=self.code, message=str(self), data=self.data)
        else:
            return JsonRpcError(code=self.code, message=str(self))

    @staticmethod
    def from_error(err: JsonRpcError) -> "JsonRpcException":
        """Create an exception from a JSON-RPC error object.

        Args:
            err (JsonRpcError): The error object from a JSON-RPC response

        Returns:
            JsonRpcException: The corresponding exception
        """
        if "data" in err:
            return JsonRpcException(err["message"], err["code"], err["data"])
        else:
            return JsonRpcException(err["message"], err["code"])


class ProtocolError(JsonRpcException):
    """A message is not legal in the current state of the session."""

    def __init__(self, message: str, data: Any = None):
        super().__init__(message, JSONRPC_INVALID_REQUEST, data)


class CapabilityError(ProtocolError):
    """A feature was used that the relevant peer never declared."""

    def __init__(self, message: str, capability: str):
        super().__init__(message, {"capability": capability})
        self.capability = capability


class UnsupportedProtocolVersion(ProtocolError):
    """The peer settled on a protocol version this side can't speak."""

    def __init__(self, version: str, supported: list[str]):
        super().__init__(
            f"Unsupported protocol version {version}",
            {"requested": version, "supported": supported},
        )
        self.version = version
        self.supported = supported


class ConnectionClosedError(JsonRpcException):
    """The session was torn down before the request could be resolved."""

    def __init__(self, message: str = "Connection closed"):
        super().__init__(message, CONNECTION_CLOSED)


class RequestCancelledError(JsonRpcException):
    """The request was abandoned before a response arrived."""

    def __init__(self, request_id: RequestId, reason: str | None = None):
        super().__init__(
            reason or f"Request {request_id} was cancelled",
            REQUEST_CANCELLED,
            request_id=request_id,
        )
        self.reason = reason


class RequestTimeoutError(RequestCancelledError):
    """No response arrived in time. The request is cancelled on the peer."""

    def __init__(self, request_id: RequestId, timeout: float):
        super().__init__(request_id, f"Request {request_id} timed out after {timeout}s")
        self.code = REQUEST_TIMEOUT
        self.timeout = timeout

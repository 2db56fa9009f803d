"""JSON-RPC frame codec.

Turns raw frames into typed messages and back. Decoding is strict: the
envelope has to be exactly one of the four JSON-RPC 2.0 message shapes,
and anything else is reported as a `JsonRpcException` carrying either
`JSONRPC_PARSE_ERROR` (not JSON at all) or `JSONRPC_INVALID_REQUEST`
(valid JSON, wrong shape). Neither direction has side effects.
"""

import json
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .exceptions import JsonRpcException
from .messages import (
    JSONRPC_INVALID_REQUEST,
    JSONRPC_PARSE_ERROR,
    JsonRpcErrorResponse,
    JsonRpcMessage,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResult,
    RequestId,
)

DEFAULT_MAX_MESSAGE_SIZE = 4 * 1024 * 1024

_REQUEST = TypeAdapter(JsonRpcRequest)
_NOTIFICATION = TypeAdapter(JsonRpcNotification)
_RESULT = TypeAdapter(JsonRpcResult)
_ERROR = TypeAdapter(JsonRpcErrorResponse)


def encode(msg: JsonRpcMessage) -> str:
    """Serialize a message into a single frame.

    Compact separators are used and JSON escapes control characters inside
    strings, so the output never contains a literal newline.
    """
    return json.dumps(msg, separators=(",", ":"), ensure_ascii=False)


def _salvage_id(obj: dict[str, Any]) -> RequestId | None:
    # Only request-shaped frames get an error back. Answering a broken
    # response would make the peer correlate it with one of its own ids.
    if "result" in obj or "error" in obj:
        return None
    msg_id = obj.get("id")
    if isinstance(msg_id, bool) or not isinstance(msg_id, str | int):
        return None
    return msg_id


def _invalid(message: str, obj: dict[str, Any] | None = None, data: Any = None) -> JsonRpcException:
    return JsonRpcException(
        message,
        JSONRPC_INVALID_REQUEST,
        data,
        request_id=_salvage_id(obj) if obj is not None else None,
    )


def decode(raw: str | bytes, max_size: int = DEFAULT_MAX_MESSAGE_SIZE) -> JsonRpcMessage:
    """Parse and validate a single frame.

    Args:
        raw (str | bytes): The frame as read from the transport
        max_size (int): Frames longer than this are rejected without parsing

    Returns:
        JsonRpcMessage: The validated message

    Raises:
        JsonRpcException: With `JSONRPC_PARSE_ERROR` or `JSONRPC_INVALID_REQUEST`.
            `request_id` is set when the frame looked like a request whose
            id could be recovered.
    """
    if len(raw) > max_size:
        raise JsonRpcException(
            f"Message too large: {len(raw)} bytes exceeds {max_size} limit",
            JSONRPC_PARSE_ERROR,
        )

    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise JsonRpcException(
            e.msg,
            JSONRPC_PARSE_ERROR,
            {"pos": e.pos, "lineno": e.lineno, "colno": e.colno},
        ) from e
    except UnicodeDecodeError as e:
        raise JsonRpcException(str(e), JSONRPC_PARSE_ERROR) from e

    if isinstance(obj, list):
        raise _invalid("Batch requests are not supported")
    if not isinstance(obj, dict):
        raise _invalid("Message must be an object")
    if obj.get("jsonrpc") != "2.0":
        raise _invalid("jsonrpc must be '2.0'", obj)

    has_id = "id" in obj
    has_result = "result" in obj
    has_error = "error" in obj

    if "method" in obj:
        if has_result or has_error:
            raise _invalid("A message can't carry both a method and a result or error", obj)
        adapter = _REQUEST if has_id else _NOTIFICATION
    elif has_id and has_result != has_error:
        adapter = _RESULT if has_result else _ERROR
    elif has_result and has_error:
        raise _invalid("A response can't carry both a result and an error", obj)
    else:
        raise _invalid("Message is neither a request, a notification nor a response", obj)

    try:
        return adapter.validate_python(obj, strict=True)
    except ValidationError as e:
        raise _invalid(
            e.title,
            obj,
            e.errors(include_url=False, include_context=False, include_input=False),
        ) from e

"""Cursor-based pagination for list operations.

Servers hand out opaque cursors; clients only ever echo them back. A cursor
here is a signed token naming the list it belongs to, where the next page
starts, and a fingerprint of the list when it was issued. Anything that
doesn't check out (bad encoding, foreign signature, other list, changed
list) is rejected with InvalidParams rather than silently restarting from
the first page.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from typing import AsyncIterator, Awaitable, Callable, Iterable, Sequence

from .jsonrpc import JSONRPC_INVALID_PARAMS, JsonRpcException, ProtocolError

_SIG_LEN = 16


def fingerprint(keys: Iterable[str]) -> str:
    """Summarize the identity and order of a list's items."""
    digest = hashlib.sha256()
    for key in keys:
        digest.update(key.encode())
        digest.update(b"\0")
    return digest.hexdigest()[:16]


class InvalidCursor(JsonRpcException):
    def __init__(self, reason: str):
        super().__init__(f"Invalid cursor: {reason}", JSONRPC_INVALID_PARAMS)


class CursorCodec:
    """Issues and checks cursors for one server.

    Args:
        secret (bytes | None): HMAC key. A random one is generated when omitted,
            which ties cursors to this codec instance.
    """

    def __init__(self, secret: bytes | None = None):
        self._secret = secret or secrets.token_bytes(32)

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._secret, payload, hashlib.sha256).digest()[:_SIG_LEN]

    def encode(self, kind: str, offset: int, list_fingerprint: str) -> str:
        payload = json.dumps(
            {"k": kind, "o": offset, "f": list_fingerprint}, separators=(",", ":")
        ).encode()
        return base64.urlsafe_b64encode(payload + self._sign(payload)).decode()

    def decode(self, cursor: str, kind: str, list_fingerprint: str) -> int:
        """Return the offset a cursor points at.

        Raises:
            InvalidCursor: If the cursor wasn't issued by this codec for this list.
        """
        try:
            raw = base64.b64decode(cursor.encode(), altchars=b"-_", validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise InvalidCursor("not a cursor") from e

        payload, sig = raw[:-_SIG_LEN], raw[-_SIG_LEN:]
        if not payload or not hmac.compare_digest(sig, self._sign(payload)):
            raise InvalidCursor("not issued by this server")

        data = json.loads(payload)
        if data["k"] != kind:
            raise InvalidCursor(f"issued for {data['k']}, not {kind}")
        if data["f"] != list_fingerprint:
            raise InvalidCursor("the list changed since the cursor was issued")
        return data["o"]


def paginate[T](
    items: Sequence[T],
    cursor: str | None,
    *,
    kind: str,
    key: Callable[[T], str],
    page_size: int,
    codec: CursorCodec,
) -> tuple[list[T], str | None]:
    """Cut one page out of `items`.

    Args:
        items: The full list, in a stable order
        cursor: The cursor from the request, None for the first page
        kind: Name of the list, e.g. "tools"
        key: Identifies an item, used to fingerprint the list
        page_size: Maximum items per page
        codec: Issues and checks cursors

    Returns:
        The page, and the cursor for the next one or None on the last page.

    Raises:
        InvalidCursor: If `cursor` can't be resolved against this list.
    """
    list_fingerprint = fingerprint(key(item) for item in items)

    offset = 0
    if cursor is not None:
        offset = codec.decode(cursor, kind, list_fingerprint)
        if not 0 < offset < len(items):
            raise InvalidCursor("offset out of range")

    end = offset + page_size
    page = list(items[offset:end])
    next_cursor = codec.encode(kind, end, list_fingerprint) if end < len(items) else None
    return page, next_cursor


async def iterate_pages[T](
    fetch: Callable[[str | None], Awaitable[tuple[list[T], str | None]]],
) -> AsyncIterator[T]:
    """Lazily walk a paginated list, fetching a page only when needed.

    The walk is forward only. A server that hands back a cursor it already
    gave out would make it loop forever, so that is treated as a protocol
    error.
    """
    cursor: str | None = None
    seen: set[str] = set()
    while True:
        items, next_cursor = await fetch(cursor)
        for item in items:
            yield item
        if next_cursor is None:
            return
        if next_cursor in seen:
            raise ProtocolError("Server repeated a pagination cursor")
        seen.add(next_cursor)
        cursor = next_cursor

"""Outstanding request bookkeeping.

The correlation table owns every request this side has issued and not yet
seen resolved. Each entry is resolved exactly once: by the matching
response, by local cancellation, or by `fail_all` when the connection goes
away. Responses are matched purely by id, so the order in which the peer
answers doesn't matter.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from .cancellation import CancellationToken
from .exceptions import ConnectionClosedError, JsonRpcException, RequestCancelledError
from .messages import JsonRpcErrorResponse, JsonRpcResult, ProgressToken, RequestId

MAX_ABANDONED_IDS = 1024
"""How many abandoned ids are remembered for quietly dropping late responses."""

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    id: RequestId
    method: str
    future: asyncio.Future[dict[str, Any]]
    cancellation_token: CancellationToken
    progress_token: ProgressToken | None = None
    issued_at: float = field(default_factory=time.monotonic)

    @property
    def done(self) -> bool:
        return self.future.done()


class CorrelationTable:
    """Tracks outstanding outbound requests by id.

    Ids come from a monotonic counter and are never reused within the
    lifetime of the table, so a late response can never be mistaken for
    the answer to a newer request.
    """

    def __init__(self):
        self._next_id = 0
        self._pending: dict[RequestId, PendingRequest] = {}
        self._abandoned: OrderedDict[RequestId, None] = OrderedDict()
        self._closed: JsonRpcException | None = None

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, id: RequestId) -> bool:
        return id in self._pending

    @property
    def closed(self) -> bool:
        return self._closed is not None

    def outstanding(self) -> list[PendingRequest]:
        return list(self._pending.values())

    def get(self, id: RequestId) -> PendingRequest | None:
        return self._pending.get(id)

    def issue(
        self,
        method: str,
        *,
        cancellation_token: CancellationToken | None = None,
        progress_token: ProgressToken | None = None,
    ) -> PendingRequest:
        """Allocate an id and record a new pending request.

        Raises:
            ConnectionClosedError: If `fail_all` already ran.
        """
        if self._closed is not None:
            raise ConnectionClosedError(str(self._closed))

        id = self._next_id
        self._next_id = self._next_id + 1

        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            id=id,
            method=method,
            future=loop.create_future(),
            cancellation_token=cancellation_token or CancellationToken(),
            progress_token=progress_token,
        )
        self._pending[id] = pending
        return pending

    def resolve(self, res: JsonRpcResult | JsonRpcErrorResponse) -> bool:
        """Deliver a response to its waiter.

        Returns:
            bool: False if no outstanding request had this id. Such responses
                are logged and dropped.
        """
        id = res["id"]

        if id is None:
            logger.warning("Received response with no id", extra={"jsonRpcMsg": res})
            return False

        pending = self._pending.pop(id, None)
        if pending is None:
            if id in self._abandoned:
                del self._abandoned[id]
                logger.debug("Discarding late response for cancelled request %s", id)
            else:
                logger.warning("Received response for unknown id %s", id, extra={"jsonRpcMsg": res})
            return False

        if "error" in res:
            pending.future.set_exception(JsonRpcException.from_error(res["error"]))
        else:
            pending.future.set_result(res["result"])
        return True

    def cancel(self, id: RequestId, reason: str | None = None) -> PendingRequest | None:
        """Resolve a request as cancelled without waiting for the peer.

        The id is remembered so that a response arriving afterwards is
        discarded quietly instead of being reported as unknown.
        """
        return self._abandon(id, RequestCancelledError(id, reason))

    def fail(self, id: RequestId, exc: JsonRpcException) -> PendingRequest | None:
        """Resolve a request with an arbitrary local failure, e.g. a timeout."""
        return self._abandon(id, exc)

    def _abandon(self, id: RequestId, exc: JsonRpcException) -> PendingRequest | None:
        pending = self._pending.pop(id, None)
        if pending is None:
            return None
        self._abandoned[id] = None
        if len(self._abandoned) > MAX_ABANDONED_IDS:
            self._abandoned.popitem(last=False)
        if not pending.future.done():
            pending.future.set_exception(exc)
        return pending

    def fail_all(self, exc: JsonRpcException | None = None) -> int:
        """Fail every outstanding request. Runs at most once.

        Returns:
            int: How many requests were failed.
        """
        if self._closed is not None:
            return 0
        self._closed = exc or ConnectionClosedError()

        pending, self._pending = self._pending, {}
        self._abandoned.clear()
        for req in pending.values():
            if not req.future.done():
                req.future.set_exception(ConnectionClosedError(str(self._closed)))
        return len(pending)

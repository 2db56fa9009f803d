"""Cancellation tokens and progress tracking.

Cancellation in MCP is cooperative: a `notifications/cancelled` only asks
the receiver to stop. Handlers observe it through the `CancellationToken`
handed to them and decide themselves when to give up. Progress flows the
other way, as `notifications/progress` messages routed by `ProgressTracker`
to whoever issued the request carrying the matching token.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .exceptions import RequestCancelledError
from .messages import ProgressToken, RequestId

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot cancellation flag that can be awaited.

    Example:
        ```python
        async def handler(ctx):
            for chunk in chunks:
                ctx.cancellation.raise_if_cancelled()
                await process(chunk)
        ```
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[["CancellationToken"], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Cancel the token.

        Returns:
            bool: False if the token was already cancelled. The first reason wins.
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)
        return True

    def add_callback(self, callback: Callable[["CancellationToken"], None]):
        """Run `callback` on cancellation, immediately if already cancelled."""
        if self.cancelled:
            callback(self)
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[["CancellationToken"], None]):
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self, request_id: RequestId = ""):
        if self.cancelled:
            raise RequestCancelledError(request_id, self._reason)


type ProgressCallback = Callable[[float, float | None, str | None], Awaitable[None] | None]
"""Called with (progress, total, message) for each progress notification."""


@dataclass
class _ProgressEntry:
    callback: ProgressCallback
    last: float | None = None


class ProgressTracker:
    """Routes incoming progress notifications to the request that asked for them."""

    def __init__(self):
        self._entries: dict[ProgressToken, _ProgressEntry] = {}

    def register(self, token: ProgressToken, callback: ProgressCallback):
        if token in self._entries:
            raise ValueError(f"Progress token {token!r} is already in use")
        self._entries[token] = _ProgressEntry(callback)

    def unregister(self, token: ProgressToken):
        self._entries.pop(token, None)

    def __contains__(self, token: ProgressToken) -> bool:
        return token in self._entries

    def handle(
        self,
        token: ProgressToken,
        progress: float,
        total: float | None = None,
        message: str | None = None,
    ) -> Awaitable[None] | None:
        """Route one progress update to its callback.

        Bookkeeping happens immediately, in arrival order. Sync callbacks run
        here; an async callback's awaitable is returned for the caller to run.
        """
        entry = self._entries.get(token)
        if entry is None:
            logger.debug("Progress for unknown token %r", token)
            return None

        if entry.last is not None and progress < entry.last:
            logger.warning(
                "Progress for token %r went backwards",
                token,
                extra={"previous": entry.last, "progress": progress},
            )
        entry.last = progress

        res = entry.callback(progress, total, message)
        if inspect.isawaitable(res):
            return res
        return None

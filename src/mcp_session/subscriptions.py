"""Resource subscription tracking.

The registry only records who is interested in which resource URI. It
never reads or caches resource contents; when a resource changes, the
owner calls `notify_updated` and every subscribed peer gets a
`notifications/resources/updated`.
"""

import logging
from typing import Protocol

from .jsonrpc import ConnectionClosedError

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_resource_updated(self, uri: str): ...


class SubscriptionRegistry:
    """Maps resource URIs to the peers subscribed to them."""

    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = {}

    def subscribe(self, uri: str, peer: Subscriber):
        peers = self._subscribers.setdefault(uri, [])
        if peer not in peers:
            peers.append(peer)
            logger.debug("Subscribed to %s", uri)

    def unsubscribe(self, uri: str, peer: Subscriber):
        """Remove a subscription. Unknown subscriptions are ignored."""
        peers = self._subscribers.get(uri)
        if peers is None or peer not in peers:
            return
        peers.remove(peer)
        if not peers:
            del self._subscribers[uri]
        logger.debug("Unsubscribed from %s", uri)

    def unsubscribe_all(self, peer: Subscriber) -> int:
        """Drop every subscription held by `peer`, e.g. when its session ends."""
        removed = 0
        for uri in list(self._subscribers):
            peers = self._subscribers[uri]
            if peer in peers:
                peers.remove(peer)
                removed += 1
                if not peers:
                    del self._subscribers[uri]
        return removed

    def subscribers(self, uri: str) -> list[Subscriber]:
        return list(self._subscribers.get(uri, ()))

    def is_subscribed(self, uri: str, peer: Subscriber) -> bool:
        return peer in self._subscribers.get(uri, ())

    def __len__(self) -> int:
        return sum(len(peers) for peers in self._subscribers.values())

    async def notify_updated(self, uri: str) -> int:
        """Tell every subscriber of `uri` that it changed.

        Peers whose connection is already gone are skipped.

        Returns:
            int: How many peers were notified.
        """
        notified = 0
        for peer in self.subscribers(uri):
            try:
                await peer.send_resource_updated(uri)
            except ConnectionClosedError:
                logger.debug("Subscriber of %s is gone", uri)
                self.unsubscribe(uri, peer)
                continue
            notified += 1
        return notified

"""Negotiated capability bookkeeping.

Both peers declare their capabilities during `initialize`. After that the
pair is frozen for the rest of the session, and every feature method is
checked against it: requests need the capability of the side serving
them, notifications need the capability of the side sending them.
"""

import logging

from .jsonrpc import CapabilityError, ProtocolError
from .lifecycle import SessionRole
from .types import ClientCapabilities, McpModel, ServerCapabilities

logger = logging.getLogger(__name__)

# Requests served by servers, with the server capability each one needs
SERVER_REQUESTS: dict[str, str] = {
    "resources/list": "resources",
    "resources/templates/list": "resources",
    "resources/read": "resources",
    "resources/subscribe": "resources.subscribe",
    "resources/unsubscribe": "resources.subscribe",
    "prompts/list": "prompts",
    "prompts/get": "prompts",
    "tools/list": "tools",
    "tools/call": "tools",
    "logging/setLevel": "logging",
    "completion/complete": "completions",
}

# Requests served by clients
CLIENT_REQUESTS: dict[str, str] = {
    "sampling/createMessage": "sampling",
    "roots/list": "roots",
}

# Notifications sent by servers, with the server capability that allows them
SERVER_NOTIFICATIONS: dict[str, str] = {
    "notifications/resources/list_changed": "resources.listChanged",
    "notifications/resources/updated": "resources.subscribe",
    "notifications/prompts/list_changed": "prompts.listChanged",
    "notifications/tools/list_changed": "tools.listChanged",
    "notifications/message": "logging",
}

# Notifications sent by clients
CLIENT_NOTIFICATIONS: dict[str, str] = {
    "notifications/roots/list_changed": "roots.listChanged",
}


def has_capability(caps: McpModel | None, path: str) -> bool:
    """Check a dotted capability path such as `resources.subscribe`."""
    if caps is None:
        return False
    head, _, flag = path.partition(".")
    value = getattr(caps, head, None)
    if value is None:
        return False
    if not flag:
        return True
    return bool(getattr(value, flag, None))


class CapabilityRegistry:
    """Holds the capabilities of both sides of one session.

    Args:
        role: Which side of the session this registry belongs to
        local: This side's declared capabilities
    """

    def __init__(self, role: SessionRole, local: ClientCapabilities | ServerCapabilities):
        self.role = role
        self._local = local
        self._remote: ClientCapabilities | ServerCapabilities | None = None

    @property
    def negotiated(self) -> bool:
        return self._remote is not None

    @property
    def local(self) -> ClientCapabilities | ServerCapabilities:
        return self._local

    @property
    def remote(self) -> ClientCapabilities | ServerCapabilities | None:
        return self._remote

    @property
    def client(self) -> ClientCapabilities | None:
        return self._local if self.role == "client" else self._remote

    @property
    def server(self) -> ServerCapabilities | None:
        return self._local if self.role == "server" else self._remote

    def set_local(self, caps: ClientCapabilities | ServerCapabilities):
        if self.negotiated:
            raise ProtocolError("Capabilities can't change after negotiation")
        self._local = caps

    def negotiate(self, remote: ClientCapabilities | ServerCapabilities):
        """Record the peer's capabilities and freeze both sets."""
        if self.negotiated:
            raise ProtocolError("Capabilities were already negotiated")
        self._remote = remote
        logger.debug(
            "Capabilities negotiated",
            extra={"local": self._local.dump(), "remote": remote.dump()},
        )

    def _outbound_requests(self) -> dict[str, str]:
        return SERVER_REQUESTS if self.role == "client" else CLIENT_REQUESTS

    def _inbound_requests(self) -> dict[str, str]:
        return SERVER_REQUESTS if self.role == "server" else CLIENT_REQUESTS

    def _local_notifications(self) -> dict[str, str]:
        return SERVER_NOTIFICATIONS if self.role == "server" else CLIENT_NOTIFICATIONS

    def _remote_notifications(self) -> dict[str, str]:
        return SERVER_NOTIFICATIONS if self.role == "client" else CLIENT_NOTIFICATIONS

    def require_outbound_request(self, method: str):
        """Fail before sending a request the peer never said it serves.

        Raises:
            CapabilityError: The caller is using an undeclared feature.
        """
        needed = self._outbound_requests().get(method)
        if needed is None or has_capability(self._remote, needed):
            return
        logger.error(
            "Refusing to send %s: the peer did not declare the %s capability",
            method,
            needed,
        )
        raise CapabilityError(f"Peer does not support {method} ({needed})", needed)

    def require_inbound_request(self, method: str):
        """Refuse to serve a request for a capability this side never declared."""
        needed = self._inbound_requests().get(method)
        if needed is None or has_capability(self._local, needed):
            return
        logger.warning("Peer sent %s without the %s capability being declared", method, needed)
        raise CapabilityError(f"{method} is not supported ({needed} not declared)", needed)

    def require_outbound_notification(self, method: str):
        needed = self._local_notifications().get(method)
        if needed is None or has_capability(self._local, needed):
            return
        logger.error("Refusing to send %s: %s was not declared", method, needed)
        raise CapabilityError(f"Can't send {method} without declaring {needed}", needed)

    def allows_inbound_notification(self, method: str) -> bool:
        """Whether the peer declared the capability that lets it send `method`."""
        needed = self._remote_notifications().get(method)
        if needed is None or has_capability(self._remote, needed):
            return True
        logger.warning("Peer sent %s without declaring %s", method, needed)
        return False

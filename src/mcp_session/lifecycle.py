"""MCP lifecycle management.

Tracks where a session is in the initialize handshake and decides which
messages are legal in each state. The state machine is shared by both
roles; what differs is who sends `initialize` and who waits for
`notifications/initialized`.

    UNINITIALIZED -> INITIALIZING -> OPERATING -> SHUTTING_DOWN -> CLOSED
"""

import logging
from enum import Enum
from typing import Literal

from .jsonrpc import (
    ConnectionClosedError,
    JsonRpcNotification,
    JsonRpcRequest,
    ProtocolError,
    UnsupportedProtocolVersion,
)

logger = logging.getLogger(__name__)

type SessionRole = Literal["client", "server"]

INITIALIZE = "initialize"
INITIALIZED = "notifications/initialized"
PING = "ping"

# Notifications that may flow before the handshake completes. They only
# refer to requests already in flight. Log messages need the negotiated
# logging capability, so they wait for OPERATING.
UTILITY_NOTIFICATIONS = frozenset(
    {
        "notifications/cancelled",
        "notifications/progress",
    }
)


class LifecycleState(Enum):
    """MCP session lifecycle states."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    OPERATING = "operating"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class Lifecycle:
    """Lifecycle state machine for one side of a session.

    Inbound messages are checked with `check_inbound` in arrival order; the
    server side performs its handshake transitions there so that a message
    is always judged against the state its predecessors left behind.
    Outbound messages are checked with `check_outbound` before anything is
    written.
    """

    def __init__(self, role: SessionRole, supported_versions: list[str]):
        self.role = role
        self.state = LifecycleState.UNINITIALIZED
        self.protocol_version: str | None = None
        self._supported = list(supported_versions)

    @property
    def supported_versions(self) -> list[str]:
        return list(self._supported)

    @property
    def is_operating(self) -> bool:
        return self.state == LifecycleState.OPERATING

    def _move(self, state: LifecycleState):
        logger.debug("Lifecycle %s -> %s", self.state.value, state.value, extra={"role": self.role})
        self.state = state

    def check_inbound(self, msg: JsonRpcRequest | JsonRpcNotification):
        """Reject an inbound message that is illegal in the current state.

        Raises:
            ProtocolError: The message must be refused. Requests get it as
                their error response, notifications are dropped.
        """
        method = msg["method"]
        is_request = "id" in msg

        match self.state:
            case LifecycleState.CLOSED:
                raise ProtocolError("Session is closed")

            case LifecycleState.OPERATING:
                if method == INITIALIZE:
                    raise ProtocolError("Session is already initialized")
                if method == INITIALIZED:
                    raise ProtocolError("Session is already operating")

            case LifecycleState.SHUTTING_DOWN:
                if is_request and method != PING:
                    raise ProtocolError("Session is shutting down")

            case LifecycleState.UNINITIALIZED | LifecycleState.INITIALIZING:
                if is_request:
                    self._check_handshake_request(method)
                else:
                    self._check_handshake_notification(method)

    def _check_handshake_request(self, method: str):
        if method == PING:
            return
        if method == INITIALIZE:
            if self.role != "server":
                raise ProtocolError("Only servers accept initialize requests")
            if self.state != LifecycleState.UNINITIALIZED:
                raise ProtocolError("Initialization is already in progress")
            self._move(LifecycleState.INITIALIZING)
            return
        raise ProtocolError(f"{method} is not allowed before initialization completes")

    def _check_handshake_notification(self, method: str):
        if method in UTILITY_NOTIFICATIONS:
            return
        if method == INITIALIZED:
            if self.role != "server":
                raise ProtocolError("Only servers accept the initialized notification")
            if self.state != LifecycleState.INITIALIZING or self.protocol_version is None:
                raise ProtocolError("Received initialized before the initialize response")
            self._move(LifecycleState.OPERATING)
            return
        raise ProtocolError(f"{method} is not allowed before initialization completes")

    def check_outbound(self, method: str, is_request: bool):
        """Refuse to send a message that is illegal in the current state.

        Raises:
            ConnectionClosedError: If the session is closed.
            ProtocolError: If the message may not be sent yet, or any more.
        """
        match self.state:
            case LifecycleState.CLOSED:
                raise ConnectionClosedError("Session is closed")

            case LifecycleState.OPERATING:
                if method == INITIALIZE:
                    raise ProtocolError("Session is already initialized")

            case LifecycleState.SHUTTING_DOWN:
                if is_request and method != PING:
                    raise ProtocolError("Session is shutting down")

            case LifecycleState.UNINITIALIZED | LifecycleState.INITIALIZING:
                if not is_request:
                    if method in UTILITY_NOTIFICATIONS:
                        return
                    if (
                        method == INITIALIZED
                        and self.role == "client"
                        and self.state == LifecycleState.INITIALIZING
                        and self.protocol_version is not None
                    ):
                        return
                    raise ProtocolError(f"Can't send {method} before initialization completes")
                if method == PING:
                    return
                if (
                    method == INITIALIZE
                    and self.role == "client"
                    and self.state == LifecycleState.UNINITIALIZED
                ):
                    return
                raise ProtocolError(f"Can't send {method} before initialization completes")

    # Client side

    def begin_initialize(self):
        if self.state != LifecycleState.UNINITIALIZED:
            raise ProtocolError("Session was already initialized")
        self._move(LifecycleState.INITIALIZING)

    def accept_version(self, version: str):
        """Record the version the server settled on.

        Raises:
            UnsupportedProtocolVersion: If this side doesn't speak it. The
                caller must close the session.
        """
        if version not in self._supported:
            raise UnsupportedProtocolVersion(version, self.supported_versions)
        self.protocol_version = version

    def mark_operating(self):
        if self.state != LifecycleState.INITIALIZING:
            raise ProtocolError(f"Can't start operating from {self.state.value}")
        self._move(LifecycleState.OPERATING)

    # Server side

    def negotiate(self, requested: str) -> str:
        """Pick the version to answer an initialize request with.

        A supported requested version is echoed back. Otherwise the newest
        supported version is proposed and the client decides whether to go on.
        """
        version = requested if requested in self._supported else self._supported[0]
        if version != requested:
            logger.info(
                "Client requested unsupported protocol version %s, proposing %s",
                requested,
                version,
            )
        self.protocol_version = version
        return version

    def reset(self):
        """Go back to UNINITIALIZED after a failed initialize request."""
        if self.state == LifecycleState.INITIALIZING:
            self.protocol_version = None
            self._move(LifecycleState.UNINITIALIZED)

    # Both sides

    def begin_shutdown(self) -> bool:
        """Returns False if the session was already shutting down or closed."""
        if self.state in (LifecycleState.SHUTTING_DOWN, LifecycleState.CLOSED):
            return False
        self._move(LifecycleState.SHUTTING_DOWN)
        return True

    def close(self):
        if self.state != LifecycleState.CLOSED:
            self._move(LifecycleState.CLOSED)

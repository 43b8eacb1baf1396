"""Connection types shared by the WebSocket server and the bridge.

A connection moves handshake_pending -> connected once its token checks
out, and only counts as a ready agent after the JSON-RPC readiness
exchange sets ``handshake_complete``.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


class ConnectionState(str, enum.Enum):
    HANDSHAKE_PENDING = "handshake_pending"
    CONNECTED = "connected"
    CLOSED = "closed"


class BindError(Exception):
    """Raised when the server cannot bind a listening port."""
    pass


class NoPortAvailableError(BindError):
    """Raised when every port in the configured range is taken."""
    pass


class BroadcastDeliveryError(Exception):
    """A single connection failed to accept a message. Never leaves broadcast()."""
    pass


@dataclass
class Connection:
    id: str
    remote: str = ""
    state: ConnectionState = ConnectionState.HANDSHAKE_PENDING
    handshake_complete: bool = False
    opened_at: float = field(default_factory=time.time)
    client_info: dict | None = None
    ws: Any = field(default=None, repr=False)

    @property
    def ready(self) -> bool:
        return self.state is ConnectionState.CONNECTED and self.handshake_complete

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "handshake_complete": self.handshake_complete,
        }


def is_agent_connected(status: dict) -> bool:
    """True iff some client is transport-connected AND finished the handshake."""
    for client in status.get("clients") or []:
        if client.get("state") == ConnectionState.CONNECTED.value and client.get("handshake_complete"):
            return True
    return False

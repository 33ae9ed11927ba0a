"""Error conditions raised by the clock, codec, link and node layers."""

from __future__ import annotations


class CausalSyncError(Exception):
    """Base exception for all causalsync errors."""


class MalformedMessage(CausalSyncError):
    """Raised when a payload does not parse into a sender plus a clock."""


class MalformedClock(MalformedMessage):
    """Raised when a clock has the wrong shape (length or entry types)."""


class PeerError(CausalSyncError):
    """Base for network-level send failures."""

    def __init__(self, address, reason: str = "") -> None:
        self.address = address
        self.reason = reason
        host, port = address
        super().__init__(f"{host}:{port}: {reason}" if reason else f"{host}:{port}")


class PeerUnreachable(PeerError):
    """Raised when a connection to a peer cannot be opened."""


class DeliveryFailed(PeerError):
    """Raised when the payload could not be fully written to a peer."""


class BindFailure(CausalSyncError):
    """Raised when the listening endpoint cannot be bound at startup."""


class UnknownPeer(CausalSyncError):
    """Raised when a process id is not part of the cluster config."""


class NodeNotRunning(CausalSyncError):
    """Raised when an operation reaches a node that is not running."""

"""Error taxonomy for the failover coordinator.

- VipguardError (base)
  - ConfigurationError (fatal at startup: bad peer list, missing secret)
  - TransientNetworkError (peer unreachable; next cycle retries)
  - AuthenticationError (bad advertisement tag; peer treated as silent)
  - ExternalCapabilityError (address reassignment failed; retried, then alarmed)
  - HealthCheckTimeout (probe overran; counts as unhealthy)

Only ConfigurationError is allowed to stop the process. Everything else is
handled where it happens and logged.
"""

from __future__ import annotations


class VipguardError(Exception):
    """Base exception for vipguard."""

    pass


class ConfigurationError(VipguardError):
    """Invalid or incomplete node configuration."""

    pass


class TransientNetworkError(VipguardError):
    """Datagram could not be delivered to a peer.

    Attributes:
        peer_id: Destination peer
        address: Destination "host:port"
    """

    def __init__(self, peer_id: str, address: str, message: str | None = None) -> None:
        self.peer_id = peer_id
        self.address = address
        super().__init__(message or f"Peer {peer_id} at {address} unreachable")


class AuthenticationError(VipguardError):
    """Advertisement failed decoding or tag verification."""

    def __init__(self, reason: str, sender_id: str | None = None) -> None:
        self.reason = reason
        self.sender_id = sender_id
        who = f" from {sender_id}" if sender_id else ""
        super().__init__(f"Rejected advertisement{who}: {reason}")


class ExternalCapabilityError(VipguardError):
    """Address reassignment call failed.

    Attributes:
        op: "associate" or "disassociate"
        address: Floating address the call was about
    """

    def __init__(self, op: str, address: str, message: str | None = None) -> None:
        self.op = op
        self.address = address
        super().__init__(message or f"{op} failed for {address}")


class HealthCheckTimeout(VipguardError):
    """Health check did not finish within its timeout."""

    def __init__(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(f"Health check timed out after {timeout_s:.2f}s")

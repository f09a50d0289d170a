"""Custom exception hierarchy for warmhost.

All warmhost-specific exceptions inherit from WarmhostError, enabling
callers to catch every warmhost failure with a single except clause.
"""

from __future__ import annotations


class WarmhostError(Exception):
    """Base exception for all warmhost errors."""


class ConfigurationError(WarmhostError):
    """Raised for invalid configuration or missing required settings."""


class DeliveryError(WarmhostError):
    """Raised when a message cannot be handed to an instance bridge."""

    def __init__(self, address: str, reason: str) -> None:
        super().__init__(f"Bridge at {address} unreachable: {reason}")
        self.address = address
        self.reason = reason


class LaunchError(WarmhostError):
    """Raised when the compute launcher fails to start an instance."""


class ProtocolError(WarmhostError):
    """Raised when a frame from the agent gateway cannot be understood."""


class AgentConnectionError(WarmhostError):
    """Raised when the agent gateway connection is missing or lost."""


class HandshakeError(AgentConnectionError):
    """Raised when the agent gateway rejects the connect handshake."""


class AgentTurnError(WarmhostError):
    """Raised to the consumer of a turn that ended in error or was aborted."""

    def __init__(self, run_id: str, state: str, message: str) -> None:
        super().__init__(f"Run {run_id} {state}: {message}")
        self.run_id = run_id
        self.state = state


class AgentRequestError(WarmhostError):
    """Raised when the agent gateway answers a request with ``ok: false``."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(f"{method} rejected: {message}")
        self.method = method

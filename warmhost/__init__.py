"""warmhost - ephemeral per-user agent instances on ECS.

Orchestrator side (stateless, per event)::

    from warmhost.gateway import route_message, Watchdog, Prewarmer

Instance side (long-lived, inside the launched task)::

    python -m warmhost instance
"""

__version__ = "0.1.0"

from warmhost.core.exceptions import (
    AgentConnectionError,
    AgentRequestError,
    AgentTurnError,
    ConfigurationError,
    DeliveryError,
    HandshakeError,
    LaunchError,
    ProtocolError,
    WarmhostError,
)
from warmhost.types import (
    InboundMessage,
    PendingMessage,
    RouteResult,
    TaskState,
    TaskStatus,
)

__all__ = [
    "AgentConnectionError",
    "AgentRequestError",
    "AgentTurnError",
    "ConfigurationError",
    "DeliveryError",
    "HandshakeError",
    "InboundMessage",
    "LaunchError",
    "PendingMessage",
    "ProtocolError",
    "RouteResult",
    "TaskState",
    "TaskStatus",
    "WarmhostError",
    "__version__",
]

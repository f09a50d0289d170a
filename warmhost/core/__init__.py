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

__all__ = [
    "AgentConnectionError",
    "AgentRequestError",
    "AgentTurnError",
    "ConfigurationError",
    "DeliveryError",
    "HandshakeError",
    "LaunchError",
    "ProtocolError",
    "WarmhostError",
]

from warmhost.gateway.activity import ActivityProfile, inactivity_timeout
from warmhost.gateway.app import create_app
from warmhost.gateway.prewarm import PrewarmOutcome, Prewarmer
from warmhost.gateway.router import BridgeDelivery, Delivery, RouterDeps, route_message
from warmhost.gateway.watchdog import SweepReport, Watchdog

__all__ = [
    "ActivityProfile",
    "BridgeDelivery",
    "Delivery",
    "PrewarmOutcome",
    "Prewarmer",
    "RouterDeps",
    "SweepReport",
    "Watchdog",
    "create_app",
    "inactivity_timeout",
    "route_message",
]

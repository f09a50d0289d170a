from warmhost.instance.bridge import create_bridge_app
from warmhost.instance.callback import CallbackSender
from warmhost.instance.client import AgentClient, ChatTurn
from warmhost.instance.lifecycle import LifecycleReporter
from warmhost.instance.relay import Relay
from warmhost.instance.startup import StartupSequencer, wait_for_port
from warmhost.instance.workspace import S3WorkspaceSync

__all__ = [
    "AgentClient",
    "CallbackSender",
    "ChatTurn",
    "LifecycleReporter",
    "Relay",
    "S3WorkspaceSync",
    "StartupSequencer",
    "create_bridge_app",
    "wait_for_port",
]

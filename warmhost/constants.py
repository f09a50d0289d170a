"""Centralized constants and enums for warmhost.

Table names, key prefixes, ports and timing knobs shared by the
orchestrator (gateway) side and the instance side.
"""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum
from typing import Final

# =============================================================================
# DynamoDB Tables & Keys
# =============================================================================

DEFAULT_TABLE_PREFIX: Final = "serverless-openclaw"


class Table(StrEnum):
    """Logical table names; the physical name is ``<prefix>-<value>``."""

    TASK_STATE = "TaskState"
    PENDING_MESSAGES = "PendingMessages"
    CONVERSATIONS = "Conversations"


class KeyPrefix(StrEnum):
    USER = "USER#"
    CONV = "CONV#"
    MSG = "MSG#"


# =============================================================================
# ECS Task States
# =============================================================================


class TaskLastStatus(StrEnum):
    """ECS ``lastStatus`` values."""

    PROVISIONING = "PROVISIONING"
    PENDING = "PENDING"
    ACTIVATING = "ACTIVATING"
    RUNNING = "RUNNING"
    DEACTIVATING = "DEACTIVATING"
    STOPPING = "STOPPING"
    DEPROVISIONING = "DEPROVISIONING"
    STOPPED = "STOPPED"


# =============================================================================
# Ports
# =============================================================================

BRIDGE_PORT: Final = 8080
AGENT_GATEWAY_PORT: Final = 18789

# =============================================================================
# Timeouts
# =============================================================================

BRIDGE_HTTP_TIMEOUT: Final = timedelta(seconds=3)
PENDING_MESSAGE_TTL: Final = timedelta(minutes=5)
CONVERSATION_TTL: Final = timedelta(days=7)
IDLE_STATE_TTL: Final = timedelta(hours=24)
PERIODIC_BACKUP_INTERVAL: Final = timedelta(minutes=5)

AGENT_PORT_WAIT: Final = timedelta(minutes=2)
AGENT_PORT_RETRY: Final = timedelta(milliseconds=500)

# =============================================================================
# Watchdog
# =============================================================================

MIN_UPTIME: Final = timedelta(minutes=5)
STALE_STARTING_THRESHOLD: Final = timedelta(minutes=10)
DEFAULT_INACTIVITY_TIMEOUT: Final = timedelta(minutes=15)
ACTIVE_TIMEOUT: Final = timedelta(minutes=30)
INACTIVE_TIMEOUT: Final = timedelta(minutes=10)
ACTIVITY_LOOKBACK_DAYS: Final = 7
ACTIVE_HOUR_THRESHOLD: Final = 2

# =============================================================================
# Prewarm
# =============================================================================

PREWARM_USER_ID: Final = "system:prewarm"
DEFAULT_PREWARM_DURATION: Final = timedelta(minutes=60)

# =============================================================================
# Metrics
# =============================================================================

METRICS_NAMESPACE: Final = "ServerlessOpenClaw"
CHANNELS: Final = ("web", "telegram")

# =============================================================================
# Workspace
# =============================================================================

WORKSPACE_PATH: Final = "/data/workspace"
WORKSPACE_PREFIX: Final = "workspaces"

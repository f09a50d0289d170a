"""TOML + environment configuration.

Loads ~/.warmhost/defaults.toml (global) and warmhost.toml (project),
merges them, overlays environment variables and resolves the result
into immutable settings for the gateway and for an instance.

Example warmhost.toml::

    [aws]
    region = "ap-northeast-2"
    cluster = "arn:aws:ecs:ap-northeast-2:123:cluster/agents"
    task_definition = "arn:aws:ecs:ap-northeast-2:123:task-definition/agent:7"
    subnets = ["subnet-a", "subnet-b"]
    security_groups = ["sg-1"]

    [gateway]
    timezone = "Asia/Seoul"
    prewarm_duration_minutes = 90
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from warmhost.aws.config import AWS
from warmhost.constants import (
    AGENT_GATEWAY_PORT,
    BRIDGE_PORT,
    DEFAULT_PREWARM_DURATION,
    WORKSPACE_PATH,
)
from warmhost.core.exceptions import ConfigurationError

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".warmhost" / "defaults.toml"
PROJECT_CONFIG_NAME = "warmhost.toml"

# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "AWS_REGION": ("aws", "region"),
    "ECS_CLUSTER_ARN": ("aws", "cluster"),
    "TASK_DEFINITION_ARN": ("aws", "task_definition"),
    "SUBNET_IDS": ("aws", "subnets"),
    "SECURITY_GROUP_IDS": ("aws", "security_groups"),
    "DATA_BUCKET": ("aws", "data_bucket"),
    "WARMHOST_TABLE_PREFIX": ("aws", "table_prefix"),
    "BRIDGE_AUTH_TOKEN": ("shared", "bridge_auth_token"),
    "METRICS_ENABLED": ("shared", "metrics_enabled"),
    "WEBSOCKET_CALLBACK_URL": ("gateway", "callback_url"),
    "PREWARM_DURATION": ("gateway", "prewarm_duration_minutes"),
    "WARMHOST_TIMEZONE": ("gateway", "timezone"),
    "WARMHOST_EXCLUSIVE_LAUNCH": ("gateway", "exclusive_launch"),
    "USER_ID": ("instance", "user_id"),
    "AGENT_GATEWAY_TOKEN": ("instance", "agent_gateway_token"),
    "CALLBACK_URL": ("instance", "callback_url"),
    "TASK_ARN": ("instance", "task_arn"),
    "ECS_CONTAINER_METADATA_URI_V4": ("instance", "metadata_uri"),
}

_LIST_KEYS = frozenset({"subnets", "security_groups"})
_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def _env_layer(env: Mapping[str, str]) -> RawConfig:
    layer: RawConfig = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if not value:
            continue
        parsed: Any = [v.strip() for v in value.split(",") if v.strip()] if key in _LIST_KEYS else value
        layer.setdefault(section, {})[key] = parsed
    return layer


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)

    merged = _deep_merge(global_cfg, project_cfg)
    merged = _deep_merge(merged, _env_layer(os.environ if env is None else env))
    for section in ("aws", "shared", "gateway", "instance"):
        merged.setdefault(section, {})
    return merged


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _as_minutes(value: Any, default: timedelta) -> timedelta:
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        return default
    return timedelta(minutes=minutes) if minutes > 0 else default


def _build_aws(raw: RawConfig) -> AWS:
    raw = dict(raw)
    for key in _LIST_KEYS:
        if key in raw:
            raw[key] = tuple(raw[key])
    try:
        return AWS(**raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid [aws] section: {e}") from e


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True, slots=True)
class GatewaySettings:
    """Settings for the orchestrator side (router, watchdog, prewarmer)."""

    aws: AWS = field(default_factory=AWS)
    bridge_auth_token: str = ""
    callback_url: str = ""
    prewarm_duration: timedelta = DEFAULT_PREWARM_DURATION
    timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo("UTC"))
    metrics_enabled: bool = False
    exclusive_launch: bool = False
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass(frozen=True, slots=True)
class InstanceSettings:
    """Settings for the process running inside a launched instance."""

    user_id: str
    bridge_auth_token: str
    agent_gateway_token: str
    callback_url: str
    aws: AWS = field(default_factory=AWS)
    task_arn: str | None = None
    metadata_uri: str | None = None
    workspace_path: Path = Path(WORKSPACE_PATH)
    metrics_enabled: bool = False
    bridge_port: int = BRIDGE_PORT
    agent_port: int = AGENT_GATEWAY_PORT

    @property
    def agent_url(self) -> str:
        return f"ws://127.0.0.1:{self.agent_port}"


def gateway_settings(config: RawConfig) -> GatewaySettings:
    shared = config.get("shared", {})
    gateway = config.get("gateway", {})
    try:
        tz = ZoneInfo(gateway.get("timezone", "UTC"))
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone {gateway.get('timezone')!r}") from e
    return GatewaySettings(
        aws=_build_aws(config.get("aws", {})),
        bridge_auth_token=str(shared.get("bridge_auth_token", "")),
        callback_url=str(gateway.get("callback_url", "")),
        prewarm_duration=_as_minutes(gateway.get("prewarm_duration_minutes"), DEFAULT_PREWARM_DURATION),
        timezone=tz,
        metrics_enabled=_as_bool(shared.get("metrics_enabled", False)),
        exclusive_launch=_as_bool(gateway.get("exclusive_launch", False)),
        host=str(gateway.get("host", "0.0.0.0")),
        port=int(gateway.get("port", 8000)),
    )


_REQUIRED_INSTANCE = ("user_id", "agent_gateway_token", "callback_url")


def instance_settings(config: RawConfig) -> InstanceSettings:
    shared = config.get("shared", {})
    instance = config.get("instance", {})
    aws = _build_aws(config.get("aws", {}))

    missing = [k for k in _REQUIRED_INSTANCE if not instance.get(k)]
    if not shared.get("bridge_auth_token"):
        missing.append("bridge_auth_token")
    if not aws.data_bucket:
        missing.append("data_bucket")
    if missing:
        raise ConfigurationError(f"Missing required instance settings: {', '.join(missing)}")

    return InstanceSettings(
        user_id=str(instance["user_id"]),
        bridge_auth_token=str(shared["bridge_auth_token"]),
        agent_gateway_token=str(instance["agent_gateway_token"]),
        callback_url=str(instance["callback_url"]),
        aws=aws,
        task_arn=instance.get("task_arn"),
        metadata_uri=instance.get("metadata_uri"),
        workspace_path=Path(instance.get("workspace_path", WORKSPACE_PATH)),
        metrics_enabled=_as_bool(shared.get("metrics_enabled", False)),
        bridge_port=int(instance.get("bridge_port", BRIDGE_PORT)),
        agent_port=int(instance.get("agent_port", AGENT_GATEWAY_PORT)),
    )

"""Injector modules assembling the gateway and instance object graphs."""

from __future__ import annotations

from dataclasses import replace

from injector import Injector, Module, provider, singleton

from warmhost import __version__
from warmhost.aws.clients import AWSModule, CloudWatchClientFactory, PushClientFactory, S3ClientFactory
from warmhost.aws.config import AWS
from warmhost.compute.launcher import ECSLauncher
from warmhost.config import GatewaySettings, InstanceSettings
from warmhost.gateway.activity import ActivityProfile
from warmhost.gateway.prewarm import Prewarmer
from warmhost.gateway.router import BridgeDelivery, RouterDeps
from warmhost.gateway.watchdog import Watchdog
from warmhost.instance.callback import CallbackSender
from warmhost.instance.client import AgentClient
from warmhost.instance.discovery import TaskIdentity
from warmhost.instance.lifecycle import LifecycleReporter
from warmhost.instance.startup import StartupSequencer
from warmhost.instance.workspace import S3WorkspaceSync
from warmhost.observability.metrics import MetricsPublisher
from warmhost.store.conversations import DynamoConversationStore
from warmhost.store.pending import DynamoPendingQueue
from warmhost.store.tasks import DynamoTaskStateStore


def launch_environment(settings: GatewaySettings) -> dict[str, str]:
    """Container environment every launched instance receives."""
    return {
        "BRIDGE_AUTH_TOKEN": settings.bridge_auth_token,
        "CALLBACK_URL": settings.callback_url,
        "METRICS_ENABLED": "true" if settings.metrics_enabled else "false",
    }


class GatewayModule(Module):
    def __init__(self, settings: GatewaySettings) -> None:
        self._settings = settings

    @singleton
    @provider
    def provide_settings(self) -> GatewaySettings:
        return self._settings

    @singleton
    @provider
    def provide_aws(self) -> AWS:
        return self._settings.aws

    @singleton
    @provider
    def provide_metrics(self, cloudwatch: CloudWatchClientFactory) -> MetricsPublisher:
        return MetricsPublisher(cloudwatch, enabled=self._settings.metrics_enabled)

    @singleton
    @provider
    def provide_delivery(self) -> BridgeDelivery:
        return BridgeDelivery(self._settings.bridge_auth_token)

    @singleton
    @provider
    def provide_router_deps(
        self,
        tasks: DynamoTaskStateStore,
        pending: DynamoPendingQueue,
        launcher: ECSLauncher,
        delivery: BridgeDelivery,
    ) -> RouterDeps:
        return RouterDeps(
            tasks=tasks,
            pending=pending,
            launcher=launcher,
            delivery=delivery,
            launch_environment=launch_environment(self._settings),
            exclusive_launch=self._settings.exclusive_launch,
        )

    @provider
    def provide_watchdog(
        self,
        tasks: DynamoTaskStateStore,
        launcher: ECSLauncher,
        cloudwatch: CloudWatchClientFactory,
    ) -> Watchdog:
        return Watchdog(tasks, launcher, ActivityProfile(cloudwatch, self._settings.timezone))

    @provider
    def provide_prewarmer(
        self,
        tasks: DynamoTaskStateStore,
        launcher: ECSLauncher,
        metrics: MetricsPublisher,
    ) -> Prewarmer:
        return Prewarmer(
            tasks,
            launcher,
            metrics,
            duration=self._settings.prewarm_duration,
            launch_environment=launch_environment(self._settings),
        )


class InstanceModule(Module):
    def __init__(self, settings: InstanceSettings, identity: TaskIdentity) -> None:
        self._settings = settings
        self._identity = identity

    @singleton
    @provider
    def provide_settings(self) -> InstanceSettings:
        return self._settings

    @singleton
    @provider
    def provide_aws(self) -> AWS:
        return replace(self._settings.aws, cluster=self._identity.cluster)

    @singleton
    @provider
    def provide_metrics(self, cloudwatch: CloudWatchClientFactory) -> MetricsPublisher:
        return MetricsPublisher(cloudwatch, enabled=self._settings.metrics_enabled)

    @singleton
    @provider
    def provide_workspace(self, s3: S3ClientFactory) -> S3WorkspaceSync:
        s = self._settings
        return S3WorkspaceSync(s3, s.aws.data_bucket, s.user_id, s.workspace_path)

    @singleton
    @provider
    def provide_callback(self, push: PushClientFactory) -> CallbackSender:
        return CallbackSender(push)

    @singleton
    @provider
    def provide_client(self) -> AgentClient:
        return AgentClient(self._settings.agent_url, self._settings.agent_gateway_token, version=__version__)

    @singleton
    @provider
    def provide_reporter(self, tasks: DynamoTaskStateStore, workspace: S3WorkspaceSync) -> LifecycleReporter:
        return LifecycleReporter(
            tasks,
            workspace,
            user_id=self._settings.user_id,
            task_arn=self._identity.task_arn,
        )

    @singleton
    @provider
    def provide_sequencer(
        self,
        workspace: S3WorkspaceSync,
        conversations: DynamoConversationStore,
        pending: DynamoPendingQueue,
        client: AgentClient,
        callback: CallbackSender,
        metrics: MetricsPublisher,
        reporter: LifecycleReporter,
        launcher: ECSLauncher,
    ) -> StartupSequencer:
        task_arn = self._identity.task_arn
        return StartupSequencer(
            self._settings,
            workspace=workspace,
            conversations=conversations,
            pending=pending,
            client=client,
            callback=callback,
            metrics=metrics,
            reporter=reporter,
            locate=lambda: launcher.public_address(task_arn),
        )


def gateway_injector(settings: GatewaySettings) -> Injector:
    return Injector([AWSModule(), GatewayModule(settings)])


def instance_injector(settings: InstanceSettings, identity: TaskIdentity) -> Injector:
    return Injector([AWSModule(push_endpoint=settings.callback_url), InstanceModule(settings, identity)])

"""AWS client factories with dependency injection.

Every component receives a factory instead of a live client, so unit
tests can hand in fakes and nothing holds a process-wide client.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

import aioboto3
from injector import Module, provider, singleton

from .config import AWS

# =============================================================================
# Client Type
# =============================================================================

type Client[T] = Callable[[], AbstractAsyncContextManager[T]]
"""Factory that returns an async context manager for a client."""


# =============================================================================
# Wrapper Classes for DI (each needs a unique type)
# =============================================================================


class _ClientFactory:
    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


class DynamoDBFactory(_ClientFactory):
    """Wrapper for the DynamoDB service resource factory."""


class ECSClientFactory(_ClientFactory):
    """Wrapper for ECS client factory."""


class EC2ClientFactory(_ClientFactory):
    """Wrapper for EC2 client factory."""


class S3ClientFactory(_ClientFactory):
    """Wrapper for S3 client factory."""


class CloudWatchClientFactory(_ClientFactory):
    """Wrapper for CloudWatch client factory."""


class PushClientFactory(_ClientFactory):
    """Wrapper for the API Gateway management (websocket push) client factory."""


# =============================================================================
# AWS Module
# =============================================================================


class AWSModule(Module):
    """DI module that provides AWS client factories.

    Usage:
        >>> from injector import Injector
        >>> from warmhost.aws import AWSModule, AWS
        >>>
        >>> injector = Injector([AWSModule()])
        >>> injector.binder.bind(AWS, to=AWS(region="us-east-1"))
        >>> store = injector.get(TaskStateStore)

    Args:
        push_endpoint: Callback URL of the websocket API; only the
            instance side needs it.
    """

    def __init__(self, push_endpoint: str | None = None) -> None:
        self._push_endpoint = push_endpoint

    @singleton
    @provider
    def provide_session(self) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return aioboto3.Session()

    @singleton
    @provider
    def provide_dynamodb(self, session: aioboto3.Session, config: AWS) -> DynamoDBFactory:
        return DynamoDBFactory(lambda: session.resource("dynamodb", region_name=config.region))

    @singleton
    @provider
    def provide_ecs(self, session: aioboto3.Session, config: AWS) -> ECSClientFactory:
        return ECSClientFactory(lambda: session.client("ecs", region_name=config.region))

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: AWS) -> EC2ClientFactory:
        return EC2ClientFactory(lambda: session.client("ec2", region_name=config.region))

    @singleton
    @provider
    def provide_s3(self, session: aioboto3.Session, config: AWS) -> S3ClientFactory:
        return S3ClientFactory(lambda: session.client("s3", region_name=config.region))

    @singleton
    @provider
    def provide_cloudwatch(self, session: aioboto3.Session, config: AWS) -> CloudWatchClientFactory:
        return CloudWatchClientFactory(lambda: session.client("cloudwatch", region_name=config.region))

    @singleton
    @provider
    def provide_push(self, session: aioboto3.Session, config: AWS) -> PushClientFactory:
        endpoint = self._push_endpoint
        return PushClientFactory(
            lambda: session.client(
                "apigatewaymanagementapi",
                region_name=config.region,
                endpoint_url=endpoint,
            )
        )


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "AWSModule",
    "Client",
    "CloudWatchClientFactory",
    "DynamoDBFactory",
    "EC2ClientFactory",
    "ECSClientFactory",
    "PushClientFactory",
    "S3ClientFactory",
]

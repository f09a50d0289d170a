from .clients import (
    AWSModule,
    Client,
    CloudWatchClientFactory,
    DynamoDBFactory,
    EC2ClientFactory,
    ECSClientFactory,
    PushClientFactory,
    S3ClientFactory,
)
from .config import AWS

__all__ = [
    "AWS",
    "AWSModule",
    "Client",
    "CloudWatchClientFactory",
    "DynamoDBFactory",
    "EC2ClientFactory",
    "ECSClientFactory",
    "PushClientFactory",
    "S3ClientFactory",
]

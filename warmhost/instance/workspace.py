"""Workspace persistence in S3 across instance lifetimes."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

from botocore.exceptions import BotoCoreError, ClientError

from warmhost.aws.clients import S3ClientFactory
from warmhost.constants import WORKSPACE_PREFIX
from warmhost.observability.logger import logger

log = logger.bind(component="workspace")


class WorkspaceSync(Protocol):
    async def restore(self) -> int: ...

    async def backup(self) -> int: ...


class S3WorkspaceSync:
    """Mirrors a local directory to ``s3://<bucket>/workspaces/<user>/``."""

    def __init__(self, s3: S3ClientFactory, bucket: str, user_id: str, local_path: Path) -> None:
        """Initialize the workspace sync.

        Args:
            s3: S3 client factory.
            bucket: Bucket holding every user's workspace.
            user_id: Owner of the workspace; selects the key prefix.
            local_path: Directory the agent reads and writes.
        """
        self._s3 = s3
        self.bucket = bucket
        self.prefix = f"{WORKSPACE_PREFIX}/{user_id}/"
        self.local_path = local_path

    def _local(self, key: str) -> Path | None:
        relative = key.removeprefix(self.prefix).lstrip("/")
        if not relative or key.endswith("/"):
            return None
        target = (self.local_path / relative).resolve()
        if not target.is_relative_to(self.local_path.resolve()):
            log.warning("Skipping object outside workspace: {key}", key=key)
            return None
        return target

    async def restore(self) -> int:
        """Download every object under the prefix.

        A first launch has nothing to restore, and a failure must not
        keep the agent from starting, so errors are logged and swallowed.

        Returns:
            Number of files written.
        """
        restored = 0
        try:
            async with self._s3() as s3:
                paginator = s3.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
                    for obj in page.get("Contents", []):
                        target = self._local(obj["Key"])
                        if target is None:
                            continue
                        resp = await s3.get_object(Bucket=self.bucket, Key=obj["Key"])
                        async with resp["Body"] as body:
                            data = await body.read()
                        await asyncio.to_thread(_write, target, data)
                        restored += 1
        except (BotoCoreError, ClientError, OSError) as e:
            log.warning("Workspace restore incomplete after {n} file(s): {err}", n=restored, err=e)
            return restored
        log.info("Restored {n} workspace file(s)", n=restored)
        return restored

    async def backup(self) -> int:
        """Upload every file under the local workspace.

        Returns:
            Number of files uploaded.
        """
        if not self.local_path.is_dir():
            return 0
        files = await asyncio.to_thread(lambda: sorted(p for p in self.local_path.rglob("*") if p.is_file()))
        async with self._s3() as s3:
            for path in files:
                key = f"{self.prefix}{path.relative_to(self.local_path).as_posix()}"
                await s3.put_object(Bucket=self.bucket, Key=key, Body=await asyncio.to_thread(path.read_bytes))
        log.debug("Backed up {n} workspace file(s)", n=len(files))
        return len(files)


def _write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)

"""Command line entry point.

    python -m warmhost gateway            # serve the routing API
    python -m warmhost watchdog --every 300
    python -m warmhost prewarm
    python -m warmhost instance           # inside a launched task
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable

from aiohttp import web
from botocore.exceptions import BotoCoreError, ClientError

from warmhost.config import gateway_settings, instance_settings, load_config
from warmhost.core.exceptions import WarmhostError
from warmhost.gateway.app import create_app
from warmhost.gateway.prewarm import Prewarmer
from warmhost.gateway.router import BridgeDelivery, RouterDeps
from warmhost.gateway.watchdog import Watchdog
from warmhost.instance.discovery import resolve_identity
from warmhost.instance.startup import StartupSequencer
from warmhost.observability.logger import logger
from warmhost.wiring import gateway_injector, instance_injector

log = logger.bind(component="cli")


async def _repeat(job: Callable[[], Awaitable[object]], every: float | None) -> None:
    while True:
        try:
            result = await job()
            log.info("Run finished: {result}", result=result)
        except (BotoCoreError, ClientError, WarmhostError) as e:
            if every is None:
                raise
            log.error("Run failed: {err}", err=e)
        if every is None:
            return
        await asyncio.sleep(every)


async def _serve_gateway() -> None:
    settings = gateway_settings(load_config())
    injector = gateway_injector(settings)
    app = create_app(
        injector.get(RouterDeps),
        token=settings.bridge_auth_token,
        callback_url=settings.callback_url,
    )
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, settings.host, settings.port).start()
    log.info("Gateway listening on {host}:{port}", host=settings.host, port=settings.port)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await injector.get(BridgeDelivery).close()


async def _watchdog(every: float | None) -> None:
    watchdog = gateway_injector(gateway_settings(load_config())).get(Watchdog)
    await _repeat(watchdog.sweep, every)


async def _prewarm(every: float | None) -> None:
    prewarmer = gateway_injector(gateway_settings(load_config())).get(Prewarmer)
    await _repeat(prewarmer.run, every)


async def _instance() -> None:
    settings = instance_settings(load_config())
    identity = await resolve_identity(settings)
    log.info("Instance for {user} in task {arn}", user=settings.user_id, arn=identity.task_arn)
    await instance_injector(settings, identity).get(StartupSequencer).run()


def cli() -> None:
    parser = argparse.ArgumentParser(prog="warmhost", description="Ephemeral per-user agent instances")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default=None, help="Also write logs to this rotating file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("gateway", help="Serve the message routing API")
    sub.add_parser("instance", help="Boot the agent instance and serve the bridge")
    for name, help_text in (("watchdog", "Evict idle instances"), ("prewarm", "Keep a spare instance warm")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--every", type=float, default=None, metavar="SECONDS", help="Repeat forever at this interval")

    args = parser.parse_args()
    logger.add(sys.stderr, level=args.log_level.upper())
    if args.log_file:
        logger.add(args.log_file, level=args.log_level.upper())

    match args.command:
        case "gateway":
            main = _serve_gateway()
        case "instance":
            main = _instance()
        case "watchdog":
            main = _watchdog(args.every)
        case "prewarm":
            main = _prewarm(args.every)
        case _:
            parser.error(f"unknown command {args.command}")

    try:
        asyncio.run(main)
    except KeyboardInterrupt:
        pass
    except WarmhostError as e:
        log.error("{err}", err=e)
        sys.exit(1)


if __name__ == "__main__":
    cli()

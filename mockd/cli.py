#!/usr/bin/python3
# -*- coding: utf-8 -*-

import argparse
import asyncio
import logging
import os
import signal
from typing import Any, List, Optional

from .configuration import ConfigurationError, load_config
from .logger import log, logconfig
from .server import MockServer, ServerRegistry, default_registry

__all__ = ["main"]

CONFIG_ENV = "MOCKD_CONFIG"


class WideHelpFormatter(argparse.ArgumentDefaultsHelpFormatter):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs["max_help_position"] = 8
        kwargs["width"] = 80
        super(WideHelpFormatter, self).__init__(*args, **kwargs)


def setup_parser(registry: ServerRegistry) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        "mockd",
        formatter_class=WideHelpFormatter,
        description="Answer HTTP or DNS requests from a YAML mock configuration",
    )
    parser.add_argument(
        "--protocol", default="http", choices=registry.list(), help="mock server protocol"
    )
    parser.add_argument(
        "--cfg",
        default=os.environ.get(CONFIG_ENV),
        help=f"mock configuration yaml, defaults to ${CONFIG_ENV}",
    )
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    return parser


def configure_logger(fname: str, level: int) -> None:
    try:
        logging_conf = load_config(fname).get("logging")
    except ConfigurationError:
        logging_conf = None
    logconfig(logging_conf, level)
    log(__name__).debug("Logger configured")


async def run(server: MockServer) -> None:
    loop = asyncio.get_running_loop()
    shutdown: List[asyncio.Future] = []

    def on_signal() -> None:
        if shutdown:
            log(__name__).info("Shutdown already in progress")
            return
        shutdown.append(asyncio.ensure_future(server.shutdown()))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, on_signal)
    log(__name__).info("======== Running ======== (Press CTRL+C to quit)")
    await server.serve()
    if shutdown:
        await shutdown[0]


def main(argv: Optional[List[str]] = None) -> int:
    registry = default_registry()
    parser = setup_parser(registry)
    args = parser.parse_args(argv)
    if not args.cfg:
        parser.error(f"--cfg is required unless ${CONFIG_ENV} is set")

    configure_logger(args.cfg, logging.DEBUG if args.debug else logging.INFO)

    server = registry.get(args.protocol)
    try:
        server.init(args.cfg)
    except ConfigurationError as e:
        log(__name__).error("Invalid configuration: %s", e)
        return 1

    try:
        asyncio.run(run(server), debug=args.debug)
    except OSError as e:
        log(__name__).error("Failed to serve %s: %s", args.protocol, e)
        return 1
    return 0

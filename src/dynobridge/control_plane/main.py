"""Command-line entrypoint for running the webhook bridge."""

from __future__ import annotations

import asyncio
import sys

import structlog

from ..common.observability import configure_logging
from ..common.settings import BridgeSettings
from .app import SERVICE_NAME, create_app
from .server import BridgeServer, ListenerError

LOGGER = structlog.get_logger("dynobridge.main")


def main() -> int:
    settings = BridgeSettings()
    configure_logging(settings, SERVICE_NAME)
    server = BridgeServer(create_app(settings), settings)
    try:
        asyncio.run(server.run())
    except ListenerError as exc:
        LOGGER.error("Server exited with error", error=str(exc))
        return 1
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()

"""
Server process entrypoint.

Resolves configuration, initialises logging and serves the FastAPI
application with uvicorn until SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional

from .api.server import create_app
from .config import GridConfig
from .runtime.sandbox import SandboxEngine
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


async def serve(config: GridConfig, *, log_level: Optional[str] = None) -> None:
    """
    Run the grid server inside an asyncio loop.

    Parameters
    ----------
    config:
        Resolved startup configuration; ``host`` and ``port`` are the bind
        address for uvicorn.
    log_level:
        Optional override for the root log level.
    """

    import uvicorn

    configure_logging(log_level)
    engine = SandboxEngine(config.width, config.height, cell_bytes=config.cell_bytes)
    app = create_app(config=config, engine=engine)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=(log_level or "info").lower(),
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    LOG.info(
        "Serving %dx%d grid (profile=%s) on ws://%s:%d/ws",
        config.width,
        config.height,
        config.profile,
        config.host,
        config.port,
    )
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Grid-state broadcast server")
    parser.add_argument("--profile", default=None, help="configuration profile to load")
    parser.add_argument("--host", default=None, help="bind host for the server")
    parser.add_argument("--port", type=int, default=None, help="bind port for the server")
    parser.add_argument("--width", type=int, default=None, help="grid width in cells")
    parser.add_argument("--height", type=int, default=None, help="grid height in cells")
    parser.add_argument("--tick-hz", dest="tick_hz", type=float, default=None, help="broadcast ticks per second")
    parser.add_argument(
        "--keepalive",
        dest="keepalive_interval",
        type=float,
        default=None,
        help="seconds between keep-alive probes (0 disables)",
    )
    parser.add_argument("--log-level", default=None, help="root log level (default: INFO)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> GridConfig:
    overrides = {
        "host": args.host,
        "port": args.port,
        "width": args.width,
        "height": args.height,
        "tick_hz": args.tick_hz,
        "keepalive_interval": args.keepalive_interval,
    }
    return GridConfig.load(args.profile, overrides=overrides)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = build_config(args)

    try:
        asyncio.run(serve(config, log_level=args.log_level))
    except KeyboardInterrupt:
        LOG.info("Server interrupted by user.")


if __name__ == "__main__":
    run()

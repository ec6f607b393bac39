"""Node fleet entry point.

Usage:
    python -m nodefleet [--config CONFIG_PATH] [--strategy none|proxy|synthetic]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from . import __version__
from .config import FleetConfig
from .models import IdentityStrategy
from .orchestrator import FleetOrchestrator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m nodefleet",
        description="Register, start and keep alive a fleet of gateway nodes",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.json (default: ./config.json if present)",
    )
    parser.add_argument(
        "--strategy",
        default=None,
        choices=[s.value for s in IdentityStrategy],
        help="Outbound identity strategy (overrides config)",
    )
    parser.add_argument("--ids", default=None, help="nodeId:hardwareId file (overrides config)")
    parser.add_argument("--token", default=None, help="Auth token file (overrides config)")
    parser.add_argument("--proxies", default=None, help="Proxy list file (overrides config)")
    parser.add_argument("--data-dir", default=None, help="Directory for the identity store")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def load_config(args: argparse.Namespace) -> FleetConfig:
    config_path = args.config
    if config_path is None and Path("config.json").exists():
        config_path = "config.json"
    config = FleetConfig.load(config_path)

    # CLI overrides
    if args.strategy:
        config.strategy = args.strategy
    if args.ids:
        config.ids_file = args.ids
    if args.token:
        config.token_file = args.token
    if args.proxies:
        config.proxy_file = args.proxies
    if args.data_dir:
        config.data_dir = args.data_dir
    return config


def main() -> None:
    args = build_parser().parse_args()

    # Logging
    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not args.debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
    log = logging.getLogger(__name__)

    try:
        config = load_config(args)
        config.validate()
    except ValueError as exc:
        log.error("Invalid configuration: %s", exc)
        sys.exit(2)

    log.info("=== nodefleet v%s ===", __version__)
    orchestrator = FleetOrchestrator.from_config(config)

    # Graceful shutdown on SIGINT/SIGTERM
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _shutdown(sig: int) -> None:
        log.info("Received signal %d, shutting down", sig)
        loop.create_task(orchestrator.shutdown())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    try:
        loop.run_until_complete(orchestrator.run_forever())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(orchestrator.shutdown())
        loop.close()


if __name__ == "__main__":
    main()

"""
Command line runner.

    python -m nwc_bridge run    [--config config.json] [--env .env] [--db db.json]
    python -m nwc_bridge status [--config config.json] [--env .env] [--db db.json]
"""

import sys
import json
import signal
import asyncio
import argparse
import logging
from pathlib import Path

from .bridge import Bridge, bridge_status
from .config import load_config

logger = logging.getLogger("Bridge")


def build_parser():
    parser = argparse.ArgumentParser(description="Cashu-NWC Bridge")
    parser.add_argument("command", nargs="?", default="run", choices=["run", "status"])
    parser.add_argument("--config", "-c", default="config.json", help="Path to config.json")
    parser.add_argument("--env", "-e", default=".env", help="Path to .env file")
    parser.add_argument("--db", default="db.json", help="Path to the state file")
    return parser


async def run(bridge, stopped=None):
    """
    Run `bridge` until SIGINT/SIGTERM or until `stopped` is set.

    Push payments only arrive if something publishes on `bridge.bus`; the
    plain `run` command builds a bridge whose bus has no publisher, so it
    relies on the sweeper alone.
    """
    if stopped is None:
        stopped = asyncio.Event()

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stopped.set)
            installed.append(sig)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    await bridge.start()
    try:
        await stopped.wait()
    finally:
        logger.info("🛑 Shutdown requested")
        await bridge.stop()
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-12s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    try:
        config = load_config(Path(args.config), env_file=args.env)
    except (ValueError, TypeError) as e:
        logger.critical(f"🛑 Bad configuration: {e}")
        sys.exit(1)

    if args.command == "status":
        print(json.dumps(bridge_status(Path(args.db), config), indent=2))
        return

    try:
        asyncio.run(run(Bridge(config, db_path=Path(args.db))))
    except KeyboardInterrupt:
        pass

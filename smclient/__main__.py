#!/usr/bin/env python
"""
Main entry point for the Super Metroid multiworld client.
Run with: python -m smclient [options]
"""
import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

from protocol.constants import CLIENT_VERSION


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Super Metroid multiworld client - bridges a session server and SNI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m smclient                                  # Attach to SNI, wait for /connect
  python -m smclient --server archipelago.gg:38281    # Connect once a device is found
  python -m smclient --config client.yaml --debug     # YAML overrides, verbose logs

Console commands:
  /connect [server] [password]   /disconnect   /sync   /items   /missing
  /pause   /resume   /device   /help
  Anything else is sent to the server as chat.
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Super Metroid Client {CLIENT_VERSION}"
    )

    parser.add_argument(
        "--server",
        help="Session server address (host[:port] or ws:// URL)"
    )

    parser.add_argument(
        "--password",
        help="Room password"
    )

    parser.add_argument(
        "--sni",
        help="SNI websocket address"
    )

    parser.add_argument(
        "--device",
        help="Device name to attach to (default: first device SNI reports)"
    )

    parser.add_argument(
        "--config",
        help="YAML config file"
    )

    parser.add_argument(
        "--data-dir",
        help="Directory for the client id and data package cache"
    )

    parser.add_argument(
        "--no-items",
        action="store_true",
        help="Start with item delivery paused"
    )

    parser.add_argument(
        "--no-console",
        action="store_true",
        help="Do not read commands from stdin"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose logging"
    )

    return parser


def apply_args(config, args):
    """Override config with CLI args."""
    if args.server:
        config = replace(config, session=replace(config.session, server_address=args.server))
    if args.password:
        config = replace(config, session=replace(config.session, password=args.password))
    if args.sni:
        config = replace(config, device=replace(config.device, sni_address=args.sni))
    if args.device:
        config = replace(config, device=replace(config.device, device_name=args.device))
    if args.data_dir:
        config = replace(config, data_dir=args.data_dir)
    if args.no_items:
        config = replace(config, receive_items=False)
    if args.no_console:
        config = replace(config, enable_console=False)
    if args.debug:
        config = replace(config, debug_mode=True)
    return config


def main(argv=None):
    args = build_parser().parse_args(argv)

    # Load environment variables from .env if exists
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        from dotenv import load_dotenv
        load_dotenv(env_path)

    from .config import get_config
    from .coordinator import ClientCoordinator

    config = apply_args(get_config(args.config), args)

    logging.basicConfig(
        level=logging.DEBUG if config.debug_mode else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    # User-facing messages print without decoration
    console = logging.getLogger("console")
    console.propagate = False
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    console.addHandler(handler)
    console.setLevel(logging.INFO)

    print(f"[SYSTEM] Starting Super Metroid Client {CLIENT_VERSION}...")
    coordinator = ClientCoordinator(config)

    async def run_client():
        try:
            await coordinator.initialize()
            await coordinator.start()
        finally:
            await coordinator.stop()

    try:
        asyncio.run(run_client())
    except KeyboardInterrupt:
        print("\n[SYSTEM] Shutting down...")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
MPRIS now-playing relay (nowplaying)

Serves the currently playing MPRIS2 track over a WebSocket so browser
overlays and other viewers can poll it.  Defaults come from the JSON config
(see nowplaying.lib.config); flags given here override it.

    python -m nowplaying --ip 127.0.0.1:32100 -a spotify -a 'firefox.*'
"""

import argparse
import asyncio
import logging
import os
import sys

from .lib.config import resolve_settings
from .players.mpris import main as mpris_main

logger = logging.getLogger("nowplaying")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nowplaying",
        description="MPRIS2 player status relay as a WebSocket server")
    parser.add_argument(
        "--ip",
        help="Address the WebSocket server binds to (default: 127.0.0.1:32100)")
    parser.add_argument(
        "--min-delay", type=float,
        help="Starting time between bus reconnect attempts, in seconds (default: 1.0)")
    parser.add_argument(
        "--max-delay", type=float,
        help="Maximum time between bus reconnect attempts, in seconds (default: 4.0). "
             "Swapped with --min-delay if smaller")
    parser.add_argument(
        "-i", "--interval", type=float,
        help="Seconds between position re-reads of the playing player (default: 2.0)")
    parser.add_argument(
        "-a", "--app-names", action="append",
        help="Regex a player name must match to be tracked; repeat for several. "
             "Leave out to track any player")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("NOWPLAYING_LOG_LEVEL", "INFO"),
        help="Logging level (default: $NOWPLAYING_LOG_LEVEL or INFO)")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    settings = resolve_settings({
        "ip": args.ip,
        "min_delay": args.min_delay,
        "max_delay": args.max_delay,
        "interval": args.interval,
        "app_names": args.app_names,
    })

    try:
        asyncio.run(mpris_main(settings))
    except OSError as e:
        logger.error("Could not bind to %s:%d (%s)! Specify a free address with --ip",
                     settings.host, settings.port, e)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

"""Systemd notify helpers for the relay service.

Sends READY / STATUS / WATCHDOG / STOPPING notifications to the socket named
by NOTIFY_SOCKET.  Silently no-ops when it is unset (dev mode, containers).

Usage:
    from nowplaying.lib.watchdog import notify_ready, watchdog_loop
    notify_ready("Listening on 127.0.0.1:32100")
    asyncio.create_task(watchdog_loop())
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send *msg* to the systemd notify socket.  Returns False if not sent."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify failed: %s", e)
        return False
    finally:
        sock.close()
    return True


def notify_ready(status: str = ""):
    msg = "READY=1"
    if status:
        msg += f"\nSTATUS={status}"
    sd_notify(msg)


def notify_stopping():
    sd_notify("STOPPING=1")


def watchdog_interval(default: float = 20.0) -> float:
    """Half of WATCHDOG_USEC when systemd sets it, else *default* seconds."""
    usec = os.environ.get("WATCHDOG_USEC")
    try:
        return max(1.0, int(usec) / 2_000_000) if usec else default
    except ValueError:
        return default


async def watchdog_loop(interval: float | None = None):
    """Send WATCHDOG=1 every *interval* seconds.  Call as asyncio.create_task()."""
    if interval is None:
        interval = watchdog_interval()
    logger.debug("Watchdog started (interval=%.1fs)", interval)
    while True:
        sd_notify("WATCHDOG=1")
        await asyncio.sleep(interval)

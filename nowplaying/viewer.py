#!/usr/bin/env python3
"""
Reference now-playing viewer (nowplaying-viewer)

Connects to the relay's WebSocket and polls it the way a browser overlay
does: status every ``status_interval`` seconds, artwork every
``artwork_interval`` seconds, over the same connection.  Responses are not
tagged, so each request/response pair is serialised with a lock.

Connection lifecycle is an explicit loop in ``run``:

    CLOSED -> OPEN -> CLOSED -> (reconnect_delay) -> OPEN ...

``stop`` ends it by not issuing the next attempt.
"""

import argparse
import asyncio
import enum
import json
import logging
import signal

import aiohttp

log = logging.getLogger(__name__)

DEFAULT_URL = "ws://127.0.0.1:32100"


class ViewerState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"


class ConnectionClosed(Exception):
    """The relay closed the WebSocket mid-request."""


def format_micros(micros) -> str:
    if not isinstance(micros, int) or micros < 0:
        return "--:--"
    seconds = micros // 1_000_000
    return f"{seconds // 60}:{seconds % 60:02d}"


class Viewer:
    def __init__(self, url: str = DEFAULT_URL, *, status_interval: float = 1.0,
                 artwork_interval: float = 5.0, artwork_index: int = 0,
                 reconnect_delay: float = 3.0, on_status=None, on_artwork=None):
        self.url = url
        self.status_interval = status_interval
        self.artwork_interval = artwork_interval
        self.artwork_index = artwork_index
        self.reconnect_delay = reconnect_delay
        # Callbacks default to this instance's own bound methods
        self.on_status = on_status or self.handle_status
        self.on_artwork = on_artwork or self.handle_artwork

        self.state = ViewerState.CLOSED
        self.connections = 0
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._last_line: str | None = None

    # ── Lifecycle ──

    async def run(self):
        """Supervising loop: connect, poll until closed, wait, reconnect."""
        self._stop_event.clear()
        async with aiohttp.ClientSession() as session:
            while not self._stop_event.is_set():
                try:
                    async with session.ws_connect(self.url, heartbeat=30) as ws:
                        self.state = ViewerState.OPEN
                        self.connections += 1
                        log.info("Connected to %s", self.url)
                        await self._poll(ws)
                except (aiohttp.ClientError, ConnectionError, ConnectionClosed,
                        asyncio.TimeoutError) as e:
                    log.warning("Connection to %s lost: %s", self.url, str(e) or type(e).__name__)
                finally:
                    self.state = ViewerState.CLOSED

                if self._stop_event.is_set():
                    break
                log.info("Reconnecting in %.1fs", self.reconnect_delay)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), self.reconnect_delay)
                except asyncio.TimeoutError:
                    pass

    def stop(self):
        self._stop_event.set()

    async def _poll(self, ws: aiohttp.ClientWebSocketResponse):
        tasks = [
            asyncio.create_task(self._status_loop(ws)),
            asyncio.create_task(self._artwork_loop(ws)),
            asyncio.create_task(self._stop_event.wait()),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    # ── Requests ──

    async def _request(self, ws: aiohttp.ClientWebSocketResponse, text: str):
        async with self._lock:
            await ws.send_str(text)
            msg = await ws.receive()
        if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                        aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
            raise ConnectionClosed(f"relay closed the connection ({msg.type.name})")
        return msg

    async def _status_loop(self, ws):
        while True:
            msg = await self._request(ws, "")
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    self.on_status(json.loads(msg.data))
                except json.JSONDecodeError:
                    log.warning("Relay sent invalid status JSON: %.64r", msg.data)
            await asyncio.sleep(self.status_interval)

    async def _artwork_loop(self, ws):
        while True:
            msg = await self._request(ws, f"artwork/{self.artwork_index}")
            if msg.type == aiohttp.WSMsgType.BINARY:
                self.on_artwork(self.artwork_index, msg.data)
            elif msg.type == aiohttp.WSMsgType.TEXT and msg.data != "null":
                self.on_artwork(self.artwork_index, msg.data)
            await asyncio.sleep(self.artwork_interval)

    # ── Default output ──

    def handle_status(self, status: dict):
        metadata = status.get("metadata") or {}
        if metadata:
            track = " - ".join(v for v in (metadata.get("artist"), metadata.get("title")) if v)
            line = (f"[{status.get('playbackState')}] {track or 'Unknown track'} "
                    f"({format_micros(status.get('position'))}/"
                    f"{format_micros(metadata.get('length'))})")
        else:
            line = f"[{status.get('playbackState')}] nothing playing"
        # Position ticks every poll; only print when the track or state changes
        key = line.rsplit(" (", 1)[0]
        if key != self._last_line:
            self._last_line = key
            print(line, flush=True)

    def handle_artwork(self, index: int, artwork):
        if isinstance(artwork, bytes):
            print(f"artwork/{index}: {len(artwork)} bytes", flush=True)
        else:
            print(f"artwork/{index}: {artwork}", flush=True)


def _artwork_index(value: str) -> int:
    index = int(value)
    if index < 0:
        raise argparse.ArgumentTypeError(f"artwork index must be 0 or greater, got {index}")
    return index


def main(argv=None):
    parser = argparse.ArgumentParser(description="Poll a now-playing relay")
    parser.add_argument("url", nargs="?", default=DEFAULT_URL,
                        help=f"Relay WebSocket URL (default: {DEFAULT_URL})")
    parser.add_argument("--status-interval", type=float, default=1.0,
                        help="Seconds between status requests (default: 1.0)")
    parser.add_argument("--artwork-interval", type=float, default=5.0,
                        help="Seconds between artwork requests (default: 5.0)")
    parser.add_argument("--artwork-index", type=_artwork_index, default=0,
                        help="Artwork index to poll (default: 0)")
    parser.add_argument("--reconnect-delay", type=float, default=3.0,
                        help="Seconds to wait before reconnecting (default: 3.0)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    async def _run():
        viewer = Viewer(args.url, status_interval=args.status_interval,
                        artwork_interval=args.artwork_interval,
                        artwork_index=args.artwork_index,
                        reconnect_delay=args.reconnect_delay)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, viewer.stop)
        await viewer.run()

    asyncio.run(_run())


if __name__ == "__main__":
    main()

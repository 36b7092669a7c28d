# MPRIS Now Playing
# Copyright (C) 2024-2026 MPRIS Now Playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
RelayBase: the viewer-facing side of the now-playing relay.

Owns the PlayerStateSynchronizer (fed by a subclass's bus watcher) and the
ArtworkResolver, and serves them over an aiohttp app:

    GET /  or /ws       WebSocket, request-driven (see below)
    GET /now-playing    same JSON a WebSocket status request returns
    GET /status         service status (players, bus, viewers)

WebSocket protocol, one reply per recognised request, nothing unsolicited:

    ""  (or empty binary)   -> JSON snapshot with live position
    "artwork/<N>"           -> binary image | text URL | text "null"
    anything else           -> ignored, connection stays open

Every connection gets its own DeliveryRecords; nothing a handler does is
visible to other connections.

Subclass contract:

    class MyRelay(RelayBase):
        name = "MPRIS"

        async def on_start(self): ...   # start feeding self.synchronizer
        async def on_stop(self): ...
        def bus_connected(self) -> bool: ...
"""

import asyncio
import json
import logging
import re
import signal
from dataclasses import dataclass

from aiohttp import WSMsgType, web

from .artwork import ArtworkResolver, Bytes, DeliveryRecords, Url
from .config import Settings
from .media_state import MediaState, snapshot_payload
from .synchronizer import PlayerStateSynchronizer
from .watchdog import notify_ready, notify_stopping, watchdog_loop

log = logging.getLogger(__name__)

WS_HEARTBEAT = 30.0

_ARTWORK_REQUEST = re.compile(r"artwork/([0-9]+)")


# ── Requests ──

@dataclass(frozen=True)
class StatusRequest:
    pass


@dataclass(frozen=True)
class ArtworkRequest:
    index: int


STATUS_REQUEST = StatusRequest()


def parse_request(text: str) -> StatusRequest | ArtworkRequest | None:
    """Classify an inbound text frame; None means "ignore it"."""
    if not text.strip():
        return STATUS_REQUEST
    match = _ARTWORK_REQUEST.fullmatch(text.strip())
    if match:
        return ArtworkRequest(int(match.group(1)))
    return None


class RelayBase:
    # ── Subclass should set this ──
    name: str = ""

    def __init__(self, settings: Settings | None = None, synchronizer=None):
        self.settings = settings or Settings()
        self.synchronizer = synchronizer or PlayerStateSynchronizer()
        self.artwork = ArtworkResolver(
            cache_size=self.settings.cache_size,
            max_bytes=self.settings.max_bytes,
            workers=self.settings.workers,
        )
        self.running: bool = False
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None
        self._watchdog_task: asyncio.Task | None = None

    # ── Subclass hooks ──

    async def on_start(self):
        """Called after the HTTP server is up."""

    async def on_stop(self):
        """Called during shutdown."""

    def bus_connected(self) -> bool:
        return False

    # ── Snapshot access ──

    def snapshot(self) -> MediaState:
        return self.synchronizer.current_snapshot()

    # ── HTTP + WebSocket server ──

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_ws)
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_get("/now-playing", self._handle_now_playing)
        app.router.add_get("/status", self._handle_status)
        return app

    async def start(self):
        """Create the aiohttp app, start listening, then run on_start()."""
        self.running = True

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.settings.host, self.settings.port)
        await site.start()
        log.info("%s relay: WebSocket on %s:%d", self.name, self.settings.host, self.settings.port)

        await self.on_start()

        notify_ready(f"Listening on {self.settings.host}:{self.settings.port}")
        self._watchdog_task = asyncio.create_task(watchdog_loop())

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        try:
            await self.start()
        except BaseException:
            await self.shutdown()
            raise
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Clean up resources."""
        self.running = False
        notify_stopping()
        await self.on_stop()

        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        for ws in list(self._ws_clients):
            await ws.close(code=1001, message=b"Server shutdown")
        self._ws_clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self.artwork.close()

    # ── WebSocket handler ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT)
        await ws.prepare(request)

        self._ws_clients.add(ws)
        log.info("Viewer connected from %s (%d total)", request.remote, len(self._ws_clients))

        records = DeliveryRecords()
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    req = parse_request(msg.data)
                elif msg.type == WSMsgType.BINARY:
                    req = STATUS_REQUEST if not msg.data else None
                elif msg.type == WSMsgType.ERROR:
                    log.warning("Viewer connection error: %s", ws.exception())
                    break
                else:
                    continue

                if req is None:
                    log.debug("Ignoring unrecognised request: %.64r", msg.data)
                    continue
                await self._answer(ws, req, records)
        except ConnectionResetError as e:
            log.debug("Viewer connection reset: %s", e)
        finally:
            self._ws_clients.discard(ws)
            log.info("Viewer disconnected (%d remaining)", len(self._ws_clients))

        return ws

    async def _answer(self, ws: web.WebSocketResponse, req, records: DeliveryRecords):
        state = self.snapshot()

        if isinstance(req, ArtworkRequest):
            response = await self.artwork.resolve(records, req.index, state)
            if isinstance(response, Bytes):
                await ws.send_bytes(response.content)
            elif isinstance(response, Url):
                await ws.send_str(response.url)
            else:
                await ws.send_str("null")
            log.debug("Answered artwork/%d with %s", req.index, type(response).__name__)
            return

        await ws.send_str(json.dumps(snapshot_payload(state)))

    # ── HTTP route handlers ──

    def _cors_headers(self):
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    async def _handle_now_playing(self, request: web.Request) -> web.Response:
        return web.json_response(snapshot_payload(self.snapshot()),
                                 headers=self._cors_headers())

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(await self.get_status(), headers=self._cors_headers())

    async def get_status(self) -> dict:
        """Return relay status. Override in subclass for richer data."""
        return {
            "name": self.name,
            "bus_connected": self.bus_connected(),
            "players": self.synchronizer.players(),
            "active_player": self.synchronizer.active_player,
            "ws_clients": len(self._ws_clients),
            "artwork_cache_size": len(self.artwork.cache),
        }

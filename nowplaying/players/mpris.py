# MPRIS Now Playing
# Copyright (C) 2024-2026 MPRIS Now Playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
MPRIS2 player watcher (nowplaying-mpris)

Watches the session bus for org.mpris.MediaPlayer2.* players and feeds their
playback status, metadata, rate and position into the relay's
PlayerStateSynchronizer.  Signals used:

  org.freedesktop.DBus.NameOwnerChanged     players appearing / exiting
  org.freedesktop.DBus.Properties.PropertiesChanged (Player interface)
  org.mpris.MediaPlayer2.Player.Seeked      position jumps

MPRIS never announces Position through PropertiesChanged, so every property
change is followed by an explicit Position read, and the active player's
position is re-read every ``interval`` seconds while it plays.

Losing the bus is not fatal: viewers keep getting the last snapshot while
the watcher reconnects with capped exponential backoff.
"""

import asyncio
import logging
from functools import partial

from dbus_next import BusType, Variant
from dbus_next.aio import MessageBus
from dbus_next.errors import DBusError

from ..lib.config import Settings
from ..lib.media_state import PlaybackStatus
from ..lib.relay_base import RelayBase
from ..lib.synchronizer import (
    PlayerAdded,
    PlayerRemoved,
    PlayerSetChanged,
    PlayerStateSynchronizer,
    PositionReported,
    PropertiesChanged,
)

logger = logging.getLogger(__name__)

MPRIS_PREFIX = "org.mpris.MediaPlayer2."
MPRIS_PATH = "/org/mpris/MediaPlayer2"
PLAYER_IFACE = "org.mpris.MediaPlayer2.Player"
PROPERTIES_IFACE = "org.freedesktop.DBus.Properties"
DBUS_NAME = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"

TRACKED_PROPERTIES = ("PlaybackStatus", "Metadata", "Rate", "Position")

# Static introspection data: some players publish XML that fails to parse,
# and only these members are ever used.
MPRIS_INTROSPECTION = """
<node>
  <interface name="org.freedesktop.DBus.Properties">
    <method name="Get">
      <arg name="interface_name" type="s" direction="in"/>
      <arg name="property_name" type="s" direction="in"/>
      <arg name="value" type="v" direction="out"/>
    </method>
    <method name="GetAll">
      <arg name="interface_name" type="s" direction="in"/>
      <arg name="properties" type="a{sv}" direction="out"/>
    </method>
    <signal name="PropertiesChanged">
      <arg name="interface_name" type="s"/>
      <arg name="changed_properties" type="a{sv}"/>
      <arg name="invalidated_properties" type="as"/>
    </signal>
  </interface>
  <interface name="org.mpris.MediaPlayer2.Player">
    <signal name="Seeked">
      <arg name="Position" type="x"/>
    </signal>
  </interface>
</node>
"""

DBUS_INTROSPECTION = """
<node>
  <interface name="org.freedesktop.DBus">
    <method name="ListNames">
      <arg name="names" type="as" direction="out"/>
    </method>
    <signal name="NameOwnerChanged">
      <arg name="name" type="s"/>
      <arg name="old_owner" type="s"/>
      <arg name="new_owner" type="s"/>
    </signal>
  </interface>
</node>
"""


def unwrap(value):
    """Recursively strip dbus-next Variants into plain Python values."""
    if isinstance(value, Variant):
        return unwrap(value.value)
    if isinstance(value, dict):
        return {k: unwrap(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unwrap(v) for v in value]
    return value


class Backoff:
    """Capped exponential delay: min, 2*min, 4*min ... up to max."""

    def __init__(self, min_delay: float, max_delay: float):
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.attempts = 0

    def next(self) -> float:
        delay = min(self.min_delay * (2 ** min(self.attempts, 32)), self.max_delay)
        self.attempts += 1
        return delay

    def reset(self):
        self.attempts = 0


class _PlayerProxy:
    def __init__(self, props, player, on_changed, on_seeked):
        self.props = props
        self.player = player
        self.on_changed = on_changed
        self.on_seeked = on_seeked

    def detach(self):
        try:
            self.props.off_properties_changed(self.on_changed)
            self.player.off_seeked(self.on_seeked)
        except Exception as e:
            logger.debug("Could not detach signal handlers: %s", e)


class MprisWatcher:
    """Single task that owns the DBus connection and feeds the synchronizer."""

    def __init__(self, synchronizer: PlayerStateSynchronizer, settings: Settings | None = None):
        self.synchronizer = synchronizer
        self.settings = settings or Settings()
        self.running: bool = False
        self.connected: bool = False
        self._backoff = Backoff(self.settings.min_delay, self.settings.max_delay)
        self._bus: MessageBus | None = None
        self._players: dict[str, _PlayerProxy] = {}
        self._tasks: set[asyncio.Task] = set()
        self._resync_task: asyncio.Task | None = None

    # ── Player filtering ──

    def wanted(self, bus_name: str) -> bool:
        if not bus_name.startswith(MPRIS_PREFIX):
            return False
        part = bus_name[len(MPRIS_PREFIX):]
        if not self.settings.app_names:
            return True
        return any(pattern.search(part) for pattern in self.settings.app_names)

    # ── Supervision ──

    async def run(self):
        """Connect, watch until the bus drops, back off, repeat."""
        self.running = True
        self._resync_task = asyncio.create_task(self._resync_loop())
        try:
            while self.running:
                try:
                    await self._session()
                    if self.running:
                        logger.warning("Session bus connection closed")
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("Session bus unavailable (%s)", e)
                finally:
                    self.connected = False

                if not self.running:
                    break
                delay = self._backoff.next()
                logger.info("Reconnecting to the session bus in %.1fs (attempt %d)",
                            delay, self._backoff.attempts)
                await asyncio.sleep(delay)
        finally:
            self.running = False
            if self._resync_task:
                self._resync_task.cancel()
                self._resync_task = None

    def stop(self):
        """Stop after the current session; no further reconnect attempts."""
        self.running = False
        if self._bus is not None:
            self._bus.disconnect()

    async def _session(self):
        """One connected lifetime of the session bus."""
        bus = await MessageBus(bus_type=BusType.SESSION).connect()
        self._bus = bus
        try:
            daemon = bus.get_proxy_object(DBUS_NAME, DBUS_PATH, DBUS_INTROSPECTION)
            dbus_iface = daemon.get_interface(DBUS_NAME)
            dbus_iface.on_name_owner_changed(self._on_name_owner_changed)

            names = [n for n in await dbus_iface.call_list_names() if self.wanted(n)]
            self.synchronizer.on_external_update(PlayerSetChanged(tuple(names)))
            for name in names:
                await self._add_player(name)

            self.connected = True
            self._backoff.reset()
            logger.info("Connected to the session bus, %d player(s) found", len(names))

            await bus.wait_for_disconnect()
        finally:
            self.connected = False
            for proxy in self._players.values():
                proxy.detach()
            self._players.clear()
            self._bus = None
            if bus.connected:
                bus.disconnect()

    # ── Player lifecycle ──

    async def _add_player(self, name: str):
        if self._bus is None or name in self._players:
            return

        obj = self._bus.get_proxy_object(name, MPRIS_PATH, MPRIS_INTROSPECTION)
        props = obj.get_interface(PROPERTIES_IFACE)
        player = obj.get_interface(PLAYER_IFACE)

        on_changed = partial(self._on_properties_changed, name)
        on_seeked = partial(self._on_seeked, name)
        props.on_properties_changed(on_changed)
        player.on_seeked(on_seeked)
        self._players[name] = _PlayerProxy(props, player, on_changed, on_seeked)

        logger.info("Found player %s", name)
        self.synchronizer.on_external_update(PlayerAdded(name))
        await self._refresh(name)

    def _remove_player(self, name: str):
        proxy = self._players.pop(name, None)
        if proxy is not None:
            proxy.detach()
        self.synchronizer.on_external_update(PlayerRemoved(name))

    async def _refresh(self, name: str):
        """Read every tracked property of *name* in one GetAll."""
        proxy = self._players.get(name)
        if proxy is None:
            return
        try:
            values = unwrap(await proxy.props.call_get_all(PLAYER_IFACE))
        except (DBusError, EOFError) as e:
            logger.debug("Could not read properties of %s: %s", name, e)
            return
        if name not in self._players:
            logger.debug("Player %s went away during refresh", name)
            return
        if not isinstance(values, dict):
            return
        props = {k: values[k] for k in TRACKED_PROPERTIES if k in values}
        self.synchronizer.on_external_update(PropertiesChanged(name, props))

    async def _refresh_position(self, name: str):
        proxy = self._players.get(name)
        if proxy is None:
            return
        try:
            position = unwrap(await proxy.props.call_get(PLAYER_IFACE, "Position"))
        except (DBusError, EOFError) as e:
            logger.debug("Could not read position of %s: %s", name, e)
            return
        if name not in self._players:
            return
        self.synchronizer.on_external_update(PositionReported(name, position))

    # ── Signal handlers (called synchronously by dbus-next) ──

    def _on_name_owner_changed(self, name: str, old_owner: str, new_owner: str):
        if not self.wanted(name):
            return
        if old_owner:
            logger.info("Player %s exited", name)
            self._remove_player(name)
        if new_owner:
            self._spawn(self._add_player(name))

    def _on_properties_changed(self, name: str, interface_name: str, changed, invalidated):
        if interface_name != PLAYER_IFACE:
            return
        props = {k: v for k, v in unwrap(changed).items() if k in TRACKED_PROPERTIES}
        if props:
            self.synchronizer.on_external_update(PropertiesChanged(name, props))
        if any(p in TRACKED_PROPERTIES for p in invalidated or ()):
            self._spawn(self._refresh(name))
        elif props:
            self._spawn(self._refresh_position(name))

    def _on_seeked(self, name: str, position):
        self.synchronizer.on_external_update(PositionReported(name, unwrap(position)))

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Player update failed: %s", task.exception())

    # ── Drift correction ──

    async def _resync_loop(self):
        while True:
            await asyncio.sleep(self.settings.interval)
            active = self.synchronizer.active_player
            if not self.connected or active is None:
                continue
            if self.synchronizer.current_snapshot().playback_status is not PlaybackStatus.PLAYING:
                continue
            try:
                await self._refresh_position(active)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Position resync for %s failed: %s", active, e)


class MprisRelay(RelayBase):
    name = "MPRIS"

    def __init__(self, settings: Settings | None = None):
        super().__init__(settings)
        self.watcher = MprisWatcher(self.synchronizer, self.settings)
        self._monitor_task: asyncio.Task | None = None

    def bus_connected(self) -> bool:
        return self.watcher.connected

    async def on_start(self):
        patterns = [p.pattern for p in self.settings.app_names]
        logger.info("Watching MPRIS players (%s)",
                    ", ".join(patterns) if patterns else "any player")
        self._monitor_task = asyncio.create_task(self.watcher.run())

    async def on_stop(self):
        self.watcher.stop()
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

    async def get_status(self) -> dict:
        base = await super().get_status()
        snapshot = self.snapshot()
        base.update({
            "app_names": [p.pattern for p in self.settings.app_names],
            "state": snapshot.playback_status.value,
            "current_track": {
                "title": snapshot.metadata.title,
                "artist": snapshot.metadata.artist,
                "album": snapshot.metadata.album,
            } if snapshot.metadata else None,
        })
        return base


async def main(settings: Settings | None = None):
    """Main entry point."""
    relay = MprisRelay(settings)
    await relay.run()

# MPRIS Now Playing
# Copyright (C) 2024-2026 MPRIS Now Playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
PlayerStateSynchronizer: the single writer of the shared MediaState.

The bus watcher translates DBus signals into the small event records below
and hands them to ``on_external_update``.  The synchronizer keeps one record
per known player, picks the active one, and publishes a fresh immutable
snapshot by plain attribute assignment.  Readers call ``current_snapshot``
from any connection handler; they never see a partial update.

Selection policy (when several players exist):
    1. players currently playing, most recent "Playing" report first
    2. otherwise, the player with the most recent property change
    ties fall back to most recent property change, then bus name.

Nothing here touches DBus types; values arrive already unwrapped.
"""

import logging
import time
from dataclasses import dataclass, field

from .media_state import (
    EMPTY_STATE,
    MediaState,
    Metadata,
    PlaybackStatus,
    artwork_ref_from_url,
    live_position,
)

log = logging.getLogger(__name__)


# ── Events ──

@dataclass(frozen=True)
class PlayerAdded:
    name: str


@dataclass(frozen=True)
class PlayerRemoved:
    name: str


@dataclass(frozen=True)
class PlayerSetChanged:
    """Full set of players present on the bus (after a (re)connect)."""
    names: tuple[str, ...]


@dataclass(frozen=True)
class PropertiesChanged:
    """Changed ``org.mpris.MediaPlayer2.Player`` properties, unwrapped."""
    name: str
    properties: dict


@dataclass(frozen=True)
class PositionReported:
    """Position from a Seeked signal or an explicit Position read."""
    name: str
    position_micros: int


PlayerEvent = PlayerAdded | PlayerRemoved | PlayerSetChanged | PropertiesChanged | PositionReported


# ── Metadata parsing ──

def _text(value) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _artist(value) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, (list, tuple)):
        names = [v for v in value if isinstance(v, str) and v]
        return ", ".join(names) or None
    return None


def _micros(value) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value < 0:
        return None
    return int(value)


def parse_metadata(raw) -> tuple[Metadata | None, str | None]:
    """Parse an MPRIS metadata dict into (Metadata, trackid).

    Fields with the wrong type are dropped individually; an empty or
    non-dict value yields no metadata at all.
    """
    if not isinstance(raw, dict) or not raw:
        return None, None

    art = artwork_ref_from_url(raw.get("mpris:artUrl"))
    metadata = Metadata(
        title=_text(raw.get("xesam:title")),
        artist=_artist(raw.get("xesam:artist")),
        album=_text(raw.get("xesam:album")),
        length_micros=_micros(raw.get("mpris:length")),
        artwork_refs=(art,) if art else (),
    )
    trackid = raw.get("mpris:trackid")
    return metadata, trackid if isinstance(trackid, str) and trackid else None


# ── Per-player record ──

@dataclass
class PlayerRecord:
    name: str
    status: PlaybackStatus = PlaybackStatus.NONE
    metadata: Metadata | None = None
    trackid: str | None = None
    raw_position: int = 0
    observed_at: float = 0.0
    rate: float = 1.0
    last_playing_at: float = field(default=float("-inf"))
    last_change_at: float = field(default=float("-inf"))

    def state(self) -> MediaState:
        return MediaState(
            playback_status=self.status,
            metadata=self.metadata,
            raw_position_micros=self.raw_position,
            raw_position_observed_at=self.observed_at,
            rate=self.rate,
            player=self.name,
        )

    def rebase(self, now: float):
        """Fold elapsed playback into the raw position (keeps it continuous)."""
        self.raw_position = live_position(self.state(), now)
        self.observed_at = now

    def set_position(self, position: int, now: float):
        self.raw_position = position
        self.observed_at = now


class PlayerStateSynchronizer:
    """Owns the canonical MediaState; sole writer, any number of readers."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._players: dict[str, PlayerRecord] = {}
        self._active: str | None = None
        self._snapshot: MediaState = EMPTY_STATE

    # ── Read side ──

    def current_snapshot(self) -> MediaState:
        return self._snapshot

    @property
    def active_player(self) -> str | None:
        return self._active

    def players(self) -> list[str]:
        return sorted(self._players)

    # ── Write side ──

    def on_external_update(self, event: PlayerEvent):
        """Apply one bus event and publish the resulting snapshot."""
        now = self._clock()

        if isinstance(event, PlayerAdded):
            self._players.setdefault(event.name, PlayerRecord(event.name, observed_at=now))
        elif isinstance(event, PlayerRemoved):
            if self._players.pop(event.name, None) is not None:
                log.info("Player %s went away", event.name)
        elif isinstance(event, PlayerSetChanged):
            present = set(event.names)
            for name in list(self._players):
                if name not in present:
                    del self._players[name]
            for name in present:
                self._players.setdefault(name, PlayerRecord(name, observed_at=now))
        elif isinstance(event, PropertiesChanged):
            record = self._players.setdefault(event.name, PlayerRecord(event.name, observed_at=now))
            self._apply_properties(record, event.properties, now)
        elif isinstance(event, PositionReported):
            record = self._players.get(event.name)
            position = _micros(event.position_micros)
            if record is None or position is None:
                log.debug("Ignoring position %r for %s", event.position_micros, event.name)
            else:
                record.set_position(position, now)
        else:
            log.warning("Ignoring unknown event %r", event)
            return

        self._publish()

    def _apply_properties(self, record: PlayerRecord, props, now: float):
        if not isinstance(props, dict):
            log.debug("Ignoring malformed properties from %s: %r", record.name, props)
            return

        record.last_change_at = now
        position = _micros(props.get("Position"))

        if "Metadata" in props:
            metadata, trackid = parse_metadata(props["Metadata"])
            if trackid is not None or record.trackid is not None:
                changed = trackid != record.trackid
            else:
                changed = metadata != record.metadata
            record.metadata = metadata
            record.trackid = trackid
            if changed and position is None:
                record.set_position(0, now)

        if "Rate" in props:
            rate = props["Rate"]
            if isinstance(rate, (int, float)) and not isinstance(rate, bool) and rate > 0:
                if rate != record.rate:
                    record.rebase(now)
                    record.rate = float(rate)
            else:
                log.debug("Ignoring invalid rate %r from %s", rate, record.name)

        if "PlaybackStatus" in props:
            status = PlaybackStatus.from_mpris(props["PlaybackStatus"])
            if status is not record.status:
                record.rebase(now)
                log.info("Player %s: %s -> %s", record.name, record.status.value, status.value)
                record.status = status
            if status is PlaybackStatus.PLAYING:
                record.last_playing_at = now

        if position is not None:
            record.set_position(position, now)

    def _select(self) -> PlayerRecord | None:
        if not self._players:
            return None
        playing = [r for r in self._players.values() if r.status is PlaybackStatus.PLAYING]
        if playing:
            return max(playing, key=lambda r: (r.last_playing_at, r.last_change_at, r.name))
        return max(self._players.values(), key=lambda r: (r.last_change_at, r.name))

    def _publish(self):
        record = self._select()
        active = record.name if record else None
        if active != self._active:
            log.info("Active player: %s", active or "none")
            self._active = active
        self._snapshot = record.state() if record else EMPTY_STATE

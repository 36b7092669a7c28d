# MPRIS Now Playing
# Copyright (C) 2024-2026 MPRIS Now Playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Immutable media-state snapshot shared by every viewer connection.

A MediaState is never mutated: the synchronizer builds a new one on each bus
update and swaps it in.  Position is stored raw (as last reported, with the
monotonic time it was observed) and interpolated on read by
``live_position``.

Wire shape produced by ``snapshot_payload``:

    {"playbackState": "playing" | "paused" | "none",
     "position": <µs>,
     "metadata": {"title", "artist", "album", "length",
                  "artwork": [{"src": ...}, ...]} | null}
"""

import enum
import time
from dataclasses import dataclass, field
from urllib.parse import quote, unquote, urlsplit


class PlaybackStatus(str, enum.Enum):
    NONE = "none"
    PLAYING = "playing"
    PAUSED = "paused"

    @classmethod
    def from_mpris(cls, value) -> "PlaybackStatus":
        """Map an MPRIS PlaybackStatus string; Stopped and unknown → none."""
        if value == "Playing":
            return cls.PLAYING
        if value == "Paused":
            return cls.PAUSED
        return cls.NONE


# ── Artwork references ──

@dataclass(frozen=True)
class LocalFile:
    """Artwork stored on the local filesystem."""
    path: str

    @property
    def src(self) -> str:
        return "file://" + quote(self.path)


@dataclass(frozen=True)
class RemoteUrl:
    """Artwork the viewer loads itself (http(s), data: URIs ...)."""
    url: str

    @property
    def src(self) -> str:
        return self.url


ArtworkRef = LocalFile | RemoteUrl


def artwork_ref_from_url(art_url) -> ArtworkRef | None:
    """Turn an ``mpris:artUrl`` value into an ArtworkRef (None when empty)."""
    if not isinstance(art_url, str):
        return None
    art_url = art_url.strip()
    if not art_url:
        return None
    if art_url.startswith("file://"):
        parts = urlsplit(art_url)
        path = unquote(parts.path)
        if not path:
            return None
        return LocalFile(path)
    return RemoteUrl(art_url)


# ── Snapshot ──

@dataclass(frozen=True)
class Metadata:
    title: str | None = None
    artist: str | None = None
    album: str | None = None
    length_micros: int | None = None
    artwork_refs: tuple[ArtworkRef, ...] = ()

    def to_wire(self) -> dict:
        return {
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "length": self.length_micros,
            "artwork": [{"src": ref.src} for ref in self.artwork_refs],
        }


@dataclass(frozen=True)
class MediaState:
    playback_status: PlaybackStatus = PlaybackStatus.NONE
    metadata: Metadata | None = None
    raw_position_micros: int = 0
    raw_position_observed_at: float = field(default=0.0)
    rate: float = 1.0
    player: str | None = None


EMPTY_STATE = MediaState()


def live_position(state: MediaState, now: float | None = None) -> int:
    """Interpolated position in microseconds at monotonic time *now*.

    While playing, the raw position advances by ``rate`` per elapsed second
    and is clamped to ``[0, length]`` (no upper bound if length is unknown).
    Any other status returns the raw position unchanged.
    """
    if state.playback_status is not PlaybackStatus.PLAYING:
        return state.raw_position_micros

    if now is None:
        now = time.monotonic()
    elapsed = now - state.raw_position_observed_at
    position = state.raw_position_micros + state.rate * elapsed * 1_000_000
    position = max(0, int(position))

    length = state.metadata.length_micros if state.metadata else None
    if length is not None:
        position = min(position, length)
    return position


def snapshot_payload(state: MediaState, now: float | None = None) -> dict:
    """JSON-ready status response for *state* at time *now*."""
    return {
        "playbackState": state.playback_status.value,
        "position": live_position(state, now),
        "metadata": state.metadata.to_wire() if state.metadata else None,
    }

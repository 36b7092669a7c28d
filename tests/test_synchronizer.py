import pytest

from nowplaying.lib.media_state import EMPTY_STATE, LocalFile, PlaybackStatus, RemoteUrl, live_position
from nowplaying.lib.synchronizer import (
    PlayerAdded,
    PlayerRemoved,
    PlayerSetChanged,
    PlayerStateSynchronizer,
    PositionReported,
    PropertiesChanged,
    parse_metadata,
)

VLC = "org.mpris.MediaPlayer2.vlc"
SPOTIFY = "org.mpris.MediaPlayer2.spotify"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _metadata(title: str, trackid: str | None = None, art: str | None = None, length: int = 200_000_000) -> dict:
    meta = {"xesam:title": title, "xesam:artist": ["Artist"], "mpris:length": length}
    if trackid:
        meta["mpris:trackid"] = trackid
    if art:
        meta["mpris:artUrl"] = art
    return meta


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sync(clock: FakeClock) -> PlayerStateSynchronizer:
    return PlayerStateSynchronizer(clock=clock)


def test_default_snapshot_before_any_player(sync: PlayerStateSynchronizer) -> None:
    snapshot = sync.current_snapshot()
    assert snapshot is EMPTY_STATE
    assert snapshot.playback_status is PlaybackStatus.NONE
    assert snapshot.metadata is None
    assert snapshot.raw_position_micros == 0
    assert snapshot.rate == 1.0


def test_properties_build_snapshot(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PlayerAdded(VLC))
    sync.on_external_update(PropertiesChanged(VLC, {
        "PlaybackStatus": "Playing",
        "Metadata": _metadata("One", "/t/1", "file:///tmp/one.png"),
        "Position": 10_000_000,
    }))

    snapshot = sync.current_snapshot()
    assert snapshot.player == VLC
    assert snapshot.playback_status is PlaybackStatus.PLAYING
    assert snapshot.metadata.title == "One"
    assert snapshot.metadata.artist == "Artist"
    assert snapshot.metadata.artwork_refs == (LocalFile("/tmp/one.png"),)
    assert snapshot.raw_position_observed_at == clock.now

    clock.advance(2.0)
    assert live_position(snapshot, clock.now) == 12_000_000


def test_snapshots_are_replaced_not_mutated(sync: PlayerStateSynchronizer) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Playing"}))
    before = sync.current_snapshot()
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Paused"}))
    after = sync.current_snapshot()
    assert before is not after
    assert before.playback_status is PlaybackStatus.PLAYING
    assert after.playback_status is PlaybackStatus.PAUSED


def test_pause_freezes_interpolated_position(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {
        "PlaybackStatus": "Playing",
        "Metadata": _metadata("One", "/t/1"),
        "Position": 1_000_000,
    }))
    clock.advance(3.0)
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Paused"}))

    snapshot = sync.current_snapshot()
    assert snapshot.raw_position_micros == 4_000_000
    clock.advance(60.0)
    assert live_position(snapshot, clock.now) == 4_000_000


def test_rate_change_rebases_position(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Playing", "Position": 0}))
    clock.advance(2.0)
    sync.on_external_update(PropertiesChanged(VLC, {"Rate": 2.0}))
    clock.advance(1.0)
    assert live_position(sync.current_snapshot(), clock.now) == 4_000_000


def test_invalid_rate_is_ignored(sync: PlayerStateSynchronizer) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Playing", "Rate": 0.0}))
    sync.on_external_update(PropertiesChanged(VLC, {"Rate": "fast"}))
    assert sync.current_snapshot().rate == 1.0


def test_track_change_resets_position(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {
        "PlaybackStatus": "Playing",
        "Metadata": _metadata("One", "/t/1"),
        "Position": 90_000_000,
    }))
    clock.advance(5.0)
    sync.on_external_update(PropertiesChanged(VLC, {"Metadata": _metadata("Two", "/t/2")}))

    snapshot = sync.current_snapshot()
    assert snapshot.metadata.title == "Two"
    assert snapshot.raw_position_micros == 0
    assert snapshot.raw_position_observed_at == clock.now


def test_same_track_metadata_refresh_keeps_position(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {
        "PlaybackStatus": "Paused",
        "Metadata": _metadata("One", "/t/1"),
        "Position": 30_000_000,
    }))
    sync.on_external_update(PropertiesChanged(VLC, {"Metadata": _metadata("One", "/t/1", art="https://x/a.jpg")}))

    snapshot = sync.current_snapshot()
    assert snapshot.raw_position_micros == 30_000_000
    assert snapshot.metadata.artwork_refs == (RemoteUrl("https://x/a.jpg"),)


def test_seek_updates_position(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Playing", "Position": 0}))
    clock.advance(1.0)
    sync.on_external_update(PositionReported(VLC, 50_000_000))
    snapshot = sync.current_snapshot()
    assert snapshot.raw_position_micros == 50_000_000
    assert snapshot.raw_position_observed_at == clock.now


def test_bad_positions_are_ignored(sync: PlayerStateSynchronizer) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Paused", "Position": 7}))
    sync.on_external_update(PositionReported(VLC, -5))
    sync.on_external_update(PositionReported(VLC, "soon"))
    sync.on_external_update(PositionReported("org.mpris.MediaPlayer2.unknown", 99))
    assert sync.current_snapshot().raw_position_micros == 7


def test_malformed_updates_do_not_crash(sync: PlayerStateSynchronizer) -> None:
    sync.on_external_update(PropertiesChanged(VLC, "garbage"))
    sync.on_external_update(PropertiesChanged(VLC, {
        "PlaybackStatus": 3,
        "Metadata": {"xesam:title": 12, "xesam:artist": [None, "Only"], "mpris:length": -1},
    }))
    snapshot = sync.current_snapshot()
    assert snapshot.playback_status is PlaybackStatus.NONE
    assert snapshot.metadata.title is None
    assert snapshot.metadata.artist == "Only"
    assert snapshot.metadata.length_micros is None
    assert snapshot.metadata.artwork_refs == ()


def test_empty_metadata_means_no_metadata(sync: PlayerStateSynchronizer) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Stopped", "Metadata": {}}))
    assert sync.current_snapshot().metadata is None


def test_playing_player_wins_over_paused(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Playing", "Metadata": _metadata("Vlc")}))
    clock.advance(1.0)
    sync.on_external_update(PropertiesChanged(SPOTIFY, {"PlaybackStatus": "Paused", "Metadata": _metadata("Spot")}))

    assert sync.active_player == VLC
    assert sync.current_snapshot().metadata.title == "Vlc"


def test_most_recent_playing_player_wins(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Playing"}))
    clock.advance(1.0)
    sync.on_external_update(PropertiesChanged(SPOTIFY, {"PlaybackStatus": "Playing"}))
    assert sync.active_player == SPOTIFY

    clock.advance(1.0)
    sync.on_external_update(PropertiesChanged(SPOTIFY, {"PlaybackStatus": "Paused"}))
    assert sync.active_player == VLC


def test_without_playing_players_latest_change_wins(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Paused"}))
    clock.advance(1.0)
    sync.on_external_update(PropertiesChanged(SPOTIFY, {"PlaybackStatus": "Stopped"}))
    assert sync.active_player == SPOTIFY


def test_removing_last_player_resets_to_default(sync: PlayerStateSynchronizer) -> None:
    sync.on_external_update(PlayerAdded(VLC))
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Playing", "Metadata": _metadata("One")}))
    sync.on_external_update(PlayerRemoved(VLC))
    assert sync.current_snapshot() is EMPTY_STATE
    assert sync.active_player is None
    assert sync.players() == []


def test_removing_active_player_falls_back(sync: PlayerStateSynchronizer, clock: FakeClock) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Paused", "Metadata": _metadata("Vlc")}))
    clock.advance(1.0)
    sync.on_external_update(PropertiesChanged(SPOTIFY, {"PlaybackStatus": "Playing", "Metadata": _metadata("Spot")}))
    sync.on_external_update(PlayerRemoved(SPOTIFY))
    assert sync.active_player == VLC
    assert sync.current_snapshot().metadata.title == "Vlc"


def test_player_set_changed_drops_missing_players(sync: PlayerStateSynchronizer) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Playing"}))
    sync.on_external_update(PropertiesChanged(SPOTIFY, {"PlaybackStatus": "Paused"}))
    sync.on_external_update(PlayerSetChanged((SPOTIFY,)))
    assert sync.players() == [SPOTIFY]
    assert sync.active_player == SPOTIFY


def test_player_set_changed_keeps_known_state(sync: PlayerStateSynchronizer) -> None:
    sync.on_external_update(PropertiesChanged(VLC, {"PlaybackStatus": "Playing", "Metadata": _metadata("Vlc")}))
    sync.on_external_update(PlayerSetChanged((VLC,)))
    assert sync.current_snapshot().metadata.title == "Vlc"


def test_parse_metadata_joins_artists_and_keeps_trackid() -> None:
    metadata, trackid = parse_metadata({
        "mpris:trackid": "/org/mpris/MediaPlayer2/Track/7",
        "xesam:title": "Song",
        "xesam:artist": ["A", "B"],
        "xesam:album": "Album",
        "mpris:length": 123,
        "mpris:artUrl": "https://example.com/art.png",
    })
    assert trackid == "/org/mpris/MediaPlayer2/Track/7"
    assert metadata.artist == "A, B"
    assert metadata.album == "Album"
    assert metadata.length_micros == 123
    assert metadata.artwork_refs == (RemoteUrl("https://example.com/art.png"),)


def test_parse_metadata_accepts_bare_artist_string() -> None:
    metadata, trackid = parse_metadata({"xesam:artist": "Solo"})
    assert metadata.artist == "Solo"
    assert trackid is None

import asyncio

import pytest
from aiohttp import test_utils

from nowplaying.lib.relay_base import RelayBase
from nowplaying.lib.synchronizer import PlayerStateSynchronizer, PropertiesChanged
from nowplaying.viewer import Viewer, ViewerState, format_micros, main

VLC = "org.mpris.MediaPlayer2.vlc"


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached in time")


@pytest.fixture
async def relay_server():
    relay = RelayBase(synchronizer=PlayerStateSynchronizer())
    relay.synchronizer.on_external_update(PropertiesChanged(VLC, {
        "PlaybackStatus": "Playing",
        "Metadata": {"xesam:title": "Song", "mpris:artUrl": "https://example.com/art.jpg"},
        "Position": 0,
    }))
    server = test_utils.TestServer(relay.build_app())
    await server.start_server()
    yield relay, server
    await server.close()
    relay.artwork.close()


async def test_viewer_polls_and_reconnects(relay_server) -> None:
    relay, server = relay_server
    statuses: list[dict] = []
    artworks: list = []

    viewer = Viewer(
        str(server.make_url("/")),
        status_interval=0.01,
        artwork_interval=0.01,
        reconnect_delay=0.05,
        on_status=statuses.append,
        on_artwork=lambda index, art: artworks.append((index, art)),
    )
    task = asyncio.create_task(viewer.run())

    await _wait_for(lambda: statuses and artworks)
    assert statuses[0]["metadata"]["title"] == "Song"
    assert artworks == [(0, "https://example.com/art.jpg")]
    assert viewer.state is ViewerState.OPEN

    # Server drops every viewer; a fresh connection gets the artwork again
    for ws in list(relay._ws_clients):
        await ws.close()
    await _wait_for(lambda: viewer.connections >= 2 and len(artworks) >= 2)
    assert artworks[1] == (0, "https://example.com/art.jpg")

    viewer.stop()
    await asyncio.wait_for(task, timeout=2)
    assert viewer.state is ViewerState.CLOSED


async def test_viewer_stop_during_backoff() -> None:
    viewer = Viewer("http://127.0.0.1:1/", reconnect_delay=30.0,
                    on_status=lambda s: None, on_artwork=lambda i, a: None)
    task = asyncio.create_task(viewer.run())
    await asyncio.sleep(0.2)
    viewer.stop()
    await asyncio.wait_for(task, timeout=2)
    assert viewer.connections == 0


def test_default_status_output_prints_on_change(capsys: pytest.CaptureFixture) -> None:
    viewer = Viewer()
    status = {
        "playbackState": "playing",
        "position": 61_000_000,
        "metadata": {"title": "Song", "artist": "Band", "length": 180_000_000},
    }
    viewer.handle_status(status)
    viewer.handle_status({**status, "position": 62_000_000})
    viewer.handle_status({"playbackState": "none", "position": 0, "metadata": None})

    lines = capsys.readouterr().out.splitlines()
    assert lines == ["[playing] Band - Song (1:01/3:00)", "[none] nothing playing"]


def test_format_micros() -> None:
    assert format_micros(0) == "0:00"
    assert format_micros(3_725_000_000) == "62:05"
    assert format_micros(None) == "--:--"


@pytest.mark.parametrize("index", ["-1", "x"])
def test_cli_rejects_bad_artwork_index(index) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["--artwork-index", index])
    assert exc.value.code == 2

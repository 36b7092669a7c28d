"""
Players: watchers for external media-status buses.

A player watcher does NOT serve viewers.  It observes a status source (the
MPRIS2 session bus) and feeds what it sees into the relay's
PlayerStateSynchronizer; RelayBase turns the resulting snapshots into
WebSocket replies.

Current players:
  mpris.py  - MPRIS2 players on the DBus session bus (any desktop player)
"""

"""MPRIS2 now-playing relay: player status and artwork over WebSocket."""

__version__ = "0.3.0"

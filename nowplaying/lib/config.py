# MPRIS Now Playing
# Copyright (C) 2024-2026 MPRIS Now Playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Shared configuration loader for the now-playing relay.

Loads a single JSON config file.  Search order:
  1. $NOWPLAYING_CONFIG             (explicit override)
  2. /etc/nowplaying/config.json    (system install)
  3. config.json                    (CWD, handy for local dev)

Command-line flags are layered on top by ``resolve_settings`` from the
entry point; everything else reads through ``cfg``.

Usage:
    from nowplaying.lib.config import cfg

    ip        = cfg("server", "ip", default="127.0.0.1:32100")
    min_delay = cfg("mpris", "min_delay", default=1.0)
    artwork   = cfg("artwork")  # returns the whole dict
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_config: dict | None = None

DEFAULT_IP = "127.0.0.1:32100"
DEFAULT_MIN_DELAY = 1.0
DEFAULT_MAX_DELAY = 4.0
DEFAULT_INTERVAL = 2.0
DEFAULT_CACHE_SIZE = 32
DEFAULT_MAX_BYTES = 8 * 1024 * 1024
DEFAULT_WORKERS = 4


def _search_paths() -> list[str]:
    paths = [
        "/etc/nowplaying/config.json",
        "config.json",
    ]
    override = os.environ.get("NOWPLAYING_CONFIG")
    if override:
        paths.insert(0, override)
    return paths


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    for section in ("server", "mpris", "artwork"):
        val = config.get(section)
        if val is not None and not isinstance(val, dict):
            logger.warning("Config %s: '%s' should be an object, ignoring it", path, section)
    mpris = config.get("mpris") or {}
    names = mpris.get("app_names") if isinstance(mpris, dict) else None
    if names is not None and not isinstance(names, list):
        logger.warning("Config %s: mpris.app_names should be a list of patterns", path)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                loaded = json.load(f)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue
        if not isinstance(loaded, dict):
            logger.error("Config %s is not a JSON object, skipping", path)
            continue
        _config = loaded
        logger.info("Config loaded from %s", path)
        _validate(_config, path)
        return _config

    logger.debug("No config.json found, using defaults")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("server")                       → config["server"]
    cfg("server", "ip")                 → config["server"]["ip"]
    cfg("mpris", "max_delay", default=4.0) → config["mpris"]["max_delay"] or 4.0
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()


# ---------------------------------------------------------------------------
# Resolved settings
# ---------------------------------------------------------------------------

@dataclass
class Settings:
    """Validated runtime settings, config file merged with CLI overrides."""

    host: str = "127.0.0.1"
    port: int = 32100
    min_delay: float = DEFAULT_MIN_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    interval: float = DEFAULT_INTERVAL
    app_names: list[re.Pattern] = field(default_factory=list)
    cache_size: int = DEFAULT_CACHE_SIZE
    max_bytes: int = DEFAULT_MAX_BYTES
    workers: int = DEFAULT_WORKERS


def parse_address(ip: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts.

    Raises ValueError when the address has no usable port.
    """
    host, sep, port = str(ip).rpartition(":")
    if not sep or not host:
        raise ValueError(f"missing port in address {ip!r}")
    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ValueError(f"port out of range in address {ip!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, port_num


def _positive(name: str, value, default: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        logger.error("%s must be a number, got %r! Setting back to default.", name, value)
        return default
    if value <= 0:
        logger.error("%s cannot be less than or equal to zero! Setting back to default.", name)
        return default
    return value


def _count(name: str, value, default: int) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.error("%s must be an integer, got %r! Setting back to default.", name, value)
        return default
    if value < 1:
        logger.error("%s must be at least 1! Setting back to default.", name)
        return default
    return value


def compile_app_names(patterns) -> list[re.Pattern]:
    """Compile player-name patterns, dropping (and logging) invalid ones."""
    if isinstance(patterns, str):
        patterns = [patterns]
    compiled = []
    for pattern in patterns or []:
        if not isinstance(pattern, str) or not pattern:
            continue
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logger.error("Could not parse regex %r: %s", pattern, e)
    return compiled


def resolve_settings(overrides: dict | None = None) -> Settings:
    """Build validated Settings from the config file plus *overrides*.

    *overrides* uses the flat Settings field names (``ip``, ``min_delay``,
    ``app_names`` ...); None values fall through to the config file.
    """
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    def pick(key, section, default):
        if key in overrides:
            return overrides[key]
        return cfg(section, key, default=default)

    settings = Settings()

    ip = pick("ip", "server", DEFAULT_IP)
    try:
        settings.host, settings.port = parse_address(ip)
    except ValueError as e:
        logger.error("Invalid bind address (%s)! Using %s.", e, DEFAULT_IP)
        settings.host, settings.port = parse_address(DEFAULT_IP)

    settings.min_delay = _positive("min_delay", pick("min_delay", "mpris", DEFAULT_MIN_DELAY),
                                   DEFAULT_MIN_DELAY)
    settings.max_delay = _positive("max_delay", pick("max_delay", "mpris", DEFAULT_MAX_DELAY),
                                   DEFAULT_MAX_DELAY)
    settings.interval = _positive("interval", pick("interval", "mpris", DEFAULT_INTERVAL),
                                  DEFAULT_INTERVAL)

    if settings.max_delay < settings.min_delay:
        logger.warning("max_delay(%s) is smaller than min_delay(%s)! Proceeding to swap the two.",
                       settings.max_delay, settings.min_delay)
        settings.min_delay, settings.max_delay = settings.max_delay, settings.min_delay

    settings.app_names = compile_app_names(pick("app_names", "mpris", []))

    settings.cache_size = _count("cache_size", pick("cache_size", "artwork", DEFAULT_CACHE_SIZE),
                                 DEFAULT_CACHE_SIZE)
    settings.max_bytes = _count("max_bytes", pick("max_bytes", "artwork", DEFAULT_MAX_BYTES),
                                DEFAULT_MAX_BYTES)
    settings.workers = _count("workers", pick("workers", "artwork", DEFAULT_WORKERS),
                              DEFAULT_WORKERS)
    return settings

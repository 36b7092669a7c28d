# MPRIS Now Playing
# Copyright (C) 2024-2026 MPRIS Now Playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Artwork resolution with per-connection "send only on change" delivery.

Each viewer connection owns a DeliveryRecords object (index -> last
ArtworkRef actually delivered).  ``ArtworkResolver.resolve`` compares the
current reference against it:

    out of range / no metadata   -> Absent
    same ref already delivered   -> Unchanged      (no I/O at all)
    LocalFile                    -> Bytes(content) (read in a thread pool)
    RemoteUrl                    -> Url(url)       (relayed verbatim)

A failed file read returns Absent and leaves the record untouched so the
next request tries again.  Local file bytes are shared between connections
through a small LRU keyed on (path, mtime, size).
"""

import asyncio
import logging
import os
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from .media_state import ArtworkRef, LocalFile, MediaState, RemoteUrl

log = logging.getLogger(__name__)

MAX_ARTWORK_SIZE = 8 * 1024 * 1024
ARTWORK_CACHE_SIZE = 32


# ── Responses ──

@dataclass(frozen=True)
class Absent:
    pass


@dataclass(frozen=True)
class Unchanged:
    pass


@dataclass(frozen=True)
class Bytes:
    content: bytes


@dataclass(frozen=True)
class Url:
    url: str


ArtworkResponse = Absent | Unchanged | Bytes | Url

ABSENT = Absent()
UNCHANGED = Unchanged()


class DeliveryRecords:
    """Per-connection memory of the last artwork sent for each index."""

    def __init__(self):
        self._delivered: dict[int, ArtworkRef] = {}

    def last_delivered(self, index: int) -> ArtworkRef | None:
        return self._delivered.get(index)

    def mark_delivered(self, index: int, ref: ArtworkRef):
        self._delivered[index] = ref

    def __contains__(self, index: int):
        return index in self._delivered

    def __len__(self):
        return len(self._delivered)


class ArtworkCache:
    """Simple LRU cache for local artwork bytes ((path, mtime, size) -> bytes)."""

    def __init__(self, max_size=ARTWORK_CACHE_SIZE):
        self.max_size = max_size
        self._cache: OrderedDict[tuple, bytes] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: tuple):
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                return self._cache[key]
            return None

    def put(self, key: tuple, data: bytes):
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            elif len(self._cache) >= self.max_size:
                self._cache.popitem(last=False)
            self._cache[key] = data

    def __contains__(self, key: tuple):
        return key in self._cache

    def __len__(self):
        return len(self._cache)


class ArtworkUnavailable(Exception):
    """A local artwork file could not be delivered."""


class ArtworkResolver:
    def __init__(self, cache_size: int = ARTWORK_CACHE_SIZE,
                 max_bytes: int = MAX_ARTWORK_SIZE, workers: int = 4):
        self.max_bytes = max_bytes
        self.cache = ArtworkCache(max_size=cache_size)
        self._executor = ThreadPoolExecutor(max_workers=workers,
                                            thread_name_prefix="artwork")

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def resolve(self, records: DeliveryRecords, index: int,
                      state: MediaState) -> ArtworkResponse:
        """Resolve artwork *index* of *state* for one connection's *records*."""
        refs = state.metadata.artwork_refs if state.metadata else ()
        if index < 0 or index >= len(refs):
            return ABSENT

        ref = refs[index]
        if records.last_delivered(index) == ref:
            return UNCHANGED

        if isinstance(ref, RemoteUrl):
            records.mark_delivered(index, ref)
            return Url(ref.url)

        if isinstance(ref, LocalFile):
            loop = asyncio.get_running_loop()
            try:
                content = await loop.run_in_executor(self._executor, self._read, ref.path)
            except ArtworkUnavailable as e:
                log.warning("Artwork %s unavailable: %s", ref.path, e)
                return ABSENT
            records.mark_delivered(index, ref)
            return Bytes(content)

        log.error("Unknown artwork reference %r", ref)
        return ABSENT

    def _read(self, path: str) -> bytes:
        """Read *path* through the LRU.  Runs in the artwork thread pool."""
        try:
            st = os.stat(path)
        except OSError as e:
            raise ArtworkUnavailable(e.strerror or str(e)) from e
        if st.st_size > self.max_bytes:
            raise ArtworkUnavailable(f"{st.st_size} bytes exceeds limit of {self.max_bytes}")

        key = (path, st.st_mtime_ns, st.st_size)
        cached = self.cache.get(key)
        if cached is not None:
            log.debug("Artwork cache hit for %s", path)
            return cached

        try:
            with open(path, "rb") as f:
                content = f.read(self.max_bytes + 1)
        except OSError as e:
            raise ArtworkUnavailable(e.strerror or str(e)) from e
        if len(content) > self.max_bytes:
            raise ArtworkUnavailable(f"file grew past limit of {self.max_bytes}")

        self.cache.put(key, content)
        log.debug("Cached artwork for %s (%d items in cache)", path, len(self.cache))
        return content

"""Probe result cache."""

import logging
import time
from typing import Callable

from .probe import SubtitleTrack

logger = logging.getLogger(__name__)


class ProbeCache:
    """Memoizes subtitle probes per (info hash, file index).

    Entries are advisory: a missing or stale entry just means the caller
    probes again.
    """

    def __init__(self, ttl: float = 24 * 60 * 60, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, int], tuple[list[SubtitleTrack], float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, info_hash: str, file_index: int) -> list[SubtitleTrack] | None:
        key = (info_hash, file_index)
        entry = self._entries.get(key)
        if entry is None:
            return None
        tracks, stored_at = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            return None
        return list(tracks)

    def put(self, info_hash: str, file_index: int, tracks: list[SubtitleTrack]) -> None:
        self._entries[(info_hash, file_index)] = (list(tracks), self._clock())

    def evict(self, info_hash: str) -> int:
        """Drop every entry of a session. Returns the number removed."""
        keys = [key for key in self._entries if key[0] == info_hash]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.debug(f"Evicted {len(keys)} probe cache entries for {info_hash}")
        return len(keys)

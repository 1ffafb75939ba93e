"""Piece scheduling for progressive playback.

Translates file-relative byte ranges into global piece indices, keeps a
lookahead window of pieces at top priority ahead of each reader, and suspends
readers until the pieces they need are on disk.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import DownloadStalled, NotFound, RangeOutOfBounds
from .engine import PiecePriority, SwarmEngine, TorrentFile, TorrentLayout

if TYPE_CHECKING:
    from .registry import TorrentSession

logger = logging.getLogger(__name__)


def piece_range(layout: TorrentLayout, file: TorrentFile, start: int, end: int) -> range:
    """Map the half-open file interval ``[start, end)`` to piece indices."""
    if end <= start:
        return range(0)
    first = (file.offset + start) // layout.piece_length
    last = (file.offset + end - 1) // layout.piece_length
    return range(first, min(last, layout.num_pieces - 1) + 1)


@dataclass
class StreamCursor:
    """Read position and prioritized window of one playback stream."""

    info_hash: str
    file_index: int
    position: int = 0
    window: list[int] = field(default_factory=list)


class StreamingScheduler:
    """Guarantees byte ranges become readable with the least extra effort.

    One cursor is kept per (info hash, file index). Every ``ensure_range``
    call moves the cursor to the start of the request and re-centers the
    lookahead window there; pieces that fall out of the window drop back to
    background priority so the file still completes eventually.
    """

    def __init__(
        self,
        engine: SwarmEngine,
        lookahead_bytes: int = 8 * 1024 * 1024,
        stall_timeout: float = 30.0,
        poll_interval: float = 0.1,
        seek_threshold_bytes: int | None = None,
    ):
        self.engine = engine
        self.lookahead_bytes = lookahead_bytes
        self.stall_timeout = stall_timeout
        self.poll_interval = poll_interval
        self.seek_threshold_bytes = seek_threshold_bytes or lookahead_bytes
        self._cursors: dict[tuple[str, int], StreamCursor] = {}

    def cursor(self, info_hash: str, file_index: int) -> StreamCursor | None:
        return self._cursors.get((info_hash, file_index))

    def _check_open(self, session: "TorrentSession") -> None:
        if session.closed:
            raise NotFound(f"Torrent {session.info_hash} was removed")

    def _validate(self, file: TorrentFile, start: int, end: int) -> None:
        if start < 0 or end > file.size or start > end:
            raise RangeOutOfBounds(
                f"Range [{start}, {end}) outside {file.name}",
                {"start": start, "end": end, "size": file.size},
            )

    def _recenter(self, session: "TorrentSession", file: TorrentFile, position: int) -> StreamCursor:
        key = (session.info_hash, file.index)
        cursor = self._cursors.get(key)
        if cursor is None:
            cursor = StreamCursor(info_hash=session.info_hash, file_index=file.index, position=position)
            self._cursors[key] = cursor
        elif abs(position - cursor.position) > self.seek_threshold_bytes:
            logger.info(f"Seek on {session.info_hash}/{file.index}: {cursor.position} -> {position}")

        window_end = min(position + self.lookahead_bytes, file.size)
        window = list(piece_range(session.layout, file, position, window_end))
        new_pieces = set(window)
        dropped = [i for i in cursor.window if i not in new_pieces]
        if dropped:
            self.engine.set_piece_priority(session.info_hash, dropped, PiecePriority.NORMAL)
        if window != cursor.window:
            self.engine.set_piece_priority(session.info_hash, window, PiecePriority.TOP)

        cursor.position = position
        cursor.window = window
        return cursor

    async def ensure_range(
        self,
        session: "TorrentSession",
        file_index: int,
        start: int,
        end: int,
    ) -> StreamCursor:
        """Suspend until ``[start, end)`` of a file is readable.

        Raises:
            NotFound: Unknown file index, or the session was removed
            RangeOutOfBounds: Interval outside the file
            DownloadStalled: No progress within the stall timeout
        """
        self._check_open(session)
        file = session.file(file_index)
        self._validate(file, start, end)
        cursor = self._recenter(session, file, start)
        await self._wait_for(session, piece_range(session.layout, file, start, end), self.stall_timeout)
        return cursor

    async def prefetch(
        self,
        session: "TorrentSession",
        file_index: int,
        start: int,
        end: int,
        priority: PiecePriority = PiecePriority.HIGH,
        timeout: float | None = None,
    ) -> None:
        """Prioritize a span below the playback window and wait for it.

        Pieces already in a stream's window are left at top priority.
        """
        self._check_open(session)
        file = session.file(file_index)
        self._validate(file, start, end)
        pieces = piece_range(session.layout, file, start, end)
        windowed = {
            i
            for cursor in self._cursors.values()
            if cursor.info_hash == session.info_hash
            for i in cursor.window
        }
        self.engine.set_piece_priority(
            session.info_hash,
            [i for i in pieces if i not in windowed],
            priority,
        )
        await self._wait_for(session, pieces, timeout if timeout is not None else self.stall_timeout)

    async def _wait_for(self, session: "TorrentSession", pieces: range, timeout: float) -> None:
        info_hash = session.info_hash
        loop = asyncio.get_running_loop()
        missing = [i for i in pieces if not self.engine.have_piece(info_hash, i)]
        deadline = loop.time() + timeout
        while missing:
            self._check_open(session)
            if loop.time() >= deadline:
                raise DownloadStalled(
                    f"{len(missing)} piece(s) of {info_hash} unavailable after {timeout:.1f}s without progress",
                    {"info_hash": info_hash, "first_missing": missing[0]},
                )
            await asyncio.sleep(self.poll_interval)
            still_missing = [i for i in missing if not self.engine.have_piece(info_hash, i)]
            if len(still_missing) < len(missing):
                deadline = loop.time() + timeout
            missing = still_missing

    def release(self, info_hash: str, file_index: int | None = None) -> None:
        """Forget cursors of a session (or one file), demoting their windows."""
        for key in list(self._cursors):
            if key[0] != info_hash or (file_index is not None and key[1] != file_index):
                continue
            cursor = self._cursors.pop(key)
            if cursor.window:
                self.engine.set_piece_priority(info_hash, cursor.window, PiecePriority.NORMAL)

    def forget(self, info_hash: str) -> None:
        """Drop cursors of a removed session without touching the engine."""
        for key in [k for k in self._cursors if k[0] == info_hash]:
            del self._cursors[key]

"""Range-aware byte delivery from partially downloaded torrent files.

Only single byte ranges are served. A multi-range header (``bytes=0-9,20-29``)
is answered with its FIRST range as a plain 206 response, not with a
multipart/byteranges body. Playback clients never send multi-range requests,
so this is a deliberate scope limit.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, BinaryIO

from ..errors import RangeUnsatisfiable
from ..torrent.engine import FileKind, TorrentFile

if TYPE_CHECKING:
    from ..torrent.registry import TorrentSession
    from ..torrent.scheduler import StreamingScheduler

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    FileKind.VIDEO: "video/mp4",
    FileKind.SUBTITLE: "text/vtt",
    FileKind.OTHER: "application/octet-stream",
}


@dataclass(frozen=True)
class ByteRange:
    """An inclusive byte range of a resource of ``size`` bytes."""

    start: int
    end: int
    size: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.size}"


def content_type_for(file: TorrentFile) -> str:
    """Content type by file kind. No sniffing."""
    return CONTENT_TYPES.get(file.kind, CONTENT_TYPES[FileKind.OTHER])


def parse_range_header(header: str | None, size: int) -> ByteRange | None:
    """
    Parse a ``Range`` request header.

    Args:
        header: Raw header value, or None when absent
        size: Resource length in bytes

    Returns:
        The range to serve, or None to serve the whole resource

    Raises:
        RangeUnsatisfiable: Malformed, inverted, or entirely out-of-bounds range
    """
    if header is None or not header.strip():
        return None

    def unsatisfiable(reason: str) -> RangeUnsatisfiable:
        return RangeUnsatisfiable(f"Range not satisfiable: {reason}", size, {"range": header})

    unit, sep, range_set = header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        raise unsatisfiable("unsupported unit")

    ranges = [r.strip() for r in range_set.split(",")]
    if len(ranges) > 1:
        logger.debug(f"Multi-range request {header!r}; serving first range only")
    first, dash, last = ranges[0].partition("-")
    first, last = first.strip(), last.strip()
    if not dash or (not first and not last):
        raise unsatisfiable("malformed range")
    if not (first or "0").isdigit() or not (last or "0").isdigit():
        raise unsatisfiable("malformed range")
    if size <= 0:
        raise unsatisfiable("empty resource")

    if not first:
        # Suffix range: the last N bytes
        suffix = int(last)
        if suffix == 0:
            raise unsatisfiable("empty suffix")
        return ByteRange(max(size - suffix, 0), size - 1, size)

    start = int(first)
    end = int(last) if last else size - 1
    if start > end:
        raise unsatisfiable("start after end")
    if start >= size:
        raise unsatisfiable("start beyond end of resource")
    return ByteRange(start, min(end, size - 1), size)


class RangeStreamer:
    """Streams one byte range of a torrent file in bounded chunks.

    Each chunk is read only after the scheduler reports its pieces available,
    and each scheduler call slides the lookahead window along with the read.
    """

    def __init__(self, scheduler: "StreamingScheduler", chunk_size: int = 64 * 1024):
        self.scheduler = scheduler
        self.chunk_size = chunk_size

    def _next_end(self, position: int, byte_range: ByteRange) -> int:
        return min(position + self.chunk_size, byte_range.end + 1)

    async def open(
        self,
        session: "TorrentSession",
        file_index: int,
        byte_range: ByteRange,
    ) -> AsyncIterator[bytes]:
        """Guarantee the first chunk, then return the body iterator.

        Errors before the first byte (unknown file, out of bounds, stall)
        propagate here, while a status code can still be sent.
        """
        await self.scheduler.ensure_range(
            session, file_index, byte_range.start, self._next_end(byte_range.start, byte_range)
        )
        return self._iter_range(session, file_index, byte_range)

    async def _iter_range(
        self,
        session: "TorrentSession",
        file_index: int,
        byte_range: ByteRange,
    ) -> AsyncIterator[bytes]:
        path = session.file_path(file_index)
        position = byte_range.start
        f = await asyncio.to_thread(_open_at, path, position)
        try:
            while position <= byte_range.end:
                end = self._next_end(position, byte_range)
                if position != byte_range.start:
                    await self.scheduler.ensure_range(session, file_index, position, end)
                data = await asyncio.to_thread(f.read, end - position)
                if not data:
                    raise OSError(f"Unexpected end of file {path} at offset {position}")
                position += len(data)
                yield data
        except asyncio.CancelledError:
            logger.debug(f"Client went away from {session.info_hash}/{file_index} at offset {position}")
            self.scheduler.release(session.info_hash, file_index)
            raise
        finally:
            f.close()


def _open_at(path: Path, offset: int) -> BinaryIO:
    f = open(path, "rb")
    f.seek(offset)
    return f

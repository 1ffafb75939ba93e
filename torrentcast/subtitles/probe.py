"""Embedded subtitle discovery with ffprobe."""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..errors import DownloadStalled, ProbeFailed
from ..torrent.engine import PiecePriority

if TYPE_CHECKING:
    from ..torrent.registry import TorrentSession
    from ..torrent.scheduler import StreamingScheduler
    from .cache import ProbeCache

logger = logging.getLogger(__name__)


@dataclass
class SubtitleTrack:
    """A subtitle stream inside a media container."""

    index: int  # Stream index within the container
    codec: str
    language: str = "und"
    title: str = ""
    forced: bool = False
    default: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_subtitle_streams(payload: dict[str, Any]) -> list[SubtitleTrack]:
    """Pick subtitle streams out of ``ffprobe -show_streams`` JSON output."""
    tracks = []
    for position, stream in enumerate(payload.get("streams") or []):
        if not isinstance(stream, dict) or stream.get("codec_type") != "subtitle":
            continue
        tags = stream.get("tags") or {}
        disposition = stream.get("disposition") or {}
        tracks.append(SubtitleTrack(
            index=int(stream.get("index", position)),
            codec=stream.get("codec_name", "unknown"),
            language=tags.get("language") or "und",
            title=tags.get("title") or f"Subtitle {position}",
            forced=disposition.get("forced") == 1,
            default=disposition.get("default") == 1,
        ))
    return tracks


class SubtitleProber:
    """Lists the subtitle tracks of a partially downloaded media file.

    Only the first few megabytes are requested, below playback priority, so
    probing never competes with an active stream's lookahead window.
    """

    def __init__(
        self,
        scheduler: "StreamingScheduler",
        cache: "ProbeCache",
        ffprobe_path: str = "ffprobe",
        prefix_bytes: int = 10 * 1024 * 1024,
        timeout: float = 20.0,
    ):
        self.scheduler = scheduler
        self.cache = cache
        self.ffprobe_path = ffprobe_path
        self.prefix_bytes = prefix_bytes
        self.timeout = timeout

    async def probe(self, session: "TorrentSession", file_index: int) -> list[SubtitleTrack]:
        """Get subtitle tracks of a file.

        Raises:
            NotFound: Unknown file index. Every other failure yields ``[]``.
        """
        session.file(file_index)

        cached = self.cache.get(session.info_hash, file_index)
        if cached is not None:
            return cached

        try:
            tracks = await self._probe(session, file_index)
        except ProbeFailed as e:
            logger.warning(f"Subtitle probe failed for {session.info_hash}/{file_index}: {e}")
            return []

        self.cache.put(session.info_hash, file_index, tracks)
        logger.info(f"Found {len(tracks)} subtitle track(s) in {session.file(file_index).name}")
        return tracks

    async def _probe(self, session: "TorrentSession", file_index: int) -> list[SubtitleTrack]:
        file = session.file(file_index)
        prefix_end = min(self.prefix_bytes, file.size)
        try:
            await self.scheduler.prefetch(
                session,
                file_index,
                0,
                prefix_end,
                priority=PiecePriority.HIGH,
                timeout=self.timeout,
            )
        except DownloadStalled as e:
            raise ProbeFailed(f"File prefix not available: {e.message}") from e

        payload = await self._run_ffprobe(session.file_path(file_index))
        return parse_subtitle_streams(payload)

    async def _run_ffprobe(self, path: Path) -> dict[str, Any]:
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_streams",
            str(path),
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeFailed(f"Cannot run {self.ffprobe_path}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProbeFailed(f"ffprobe timed out after {self.timeout:.0f}s") from e
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

        if proc.returncode != 0:
            raise ProbeFailed(f"ffprobe exited with {proc.returncode}: {stderr.decode(errors='replace')[:500]}")

        # Tags in older containers are often Latin-1, not UTF-8
        try:
            payload = json.loads(stdout.decode("utf-8", errors="replace") or "{}")
        except ValueError as e:
            raise ProbeFailed(f"ffprobe returned invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ProbeFailed(f"ffprobe returned {type(payload).__name__}, expected an object")
        return payload

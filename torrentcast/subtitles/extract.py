"""Embedded subtitle extraction with ffmpeg."""

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator

from ..errors import ExtractionFailed

logger = logging.getLogger(__name__)


class SubtitleExtraction:
    """A running ffmpeg process emitting one subtitle track as WebVTT.

    The process is owned by this object: ``aclose()`` terminates it and is
    safe to call any number of times, from any exit path.
    """

    TERMINATE_GRACE = 2.0

    def __init__(self, process: asyncio.subprocess.Process, track_index: int, chunk_size: int = 64 * 1024):
        self.process = process
        self.track_index = track_index
        self.chunk_size = chunk_size

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield caption bytes as ffmpeg produces them.

        Raises:
            ExtractionFailed: If ffmpeg exits with an error
        """
        try:
            while True:
                chunk = await self.process.stdout.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

            returncode = await self.process.wait()
            if returncode != 0:
                stderr = await self.process.stderr.read()
                raise ExtractionFailed(
                    f"ffmpeg exited with {returncode} extracting stream {self.track_index}",
                    {"stderr": stderr.decode(errors="replace")[:500]},
                )
            logger.info(f"Subtitle stream {self.track_index} extracted")
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Terminate the subprocess if it is still running."""
        if self.process.returncode is not None:
            return
        logger.info(f"Stopping subtitle extraction of stream {self.track_index}")
        try:
            self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=self.TERMINATE_GRACE)
            except asyncio.TimeoutError:
                self.process.kill()
                await self.process.wait()
        except ProcessLookupError:
            pass


class SubtitleExtractor:
    """Spawns ffmpeg to transcode an embedded subtitle track to WebVTT."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", chunk_size: int = 64 * 1024):
        self.ffmpeg_path = ffmpeg_path
        self.chunk_size = chunk_size

    def build_command(self, path: Path, track_index: int) -> list[str]:
        return [
            self.ffmpeg_path,
            "-nostdin",
            "-v", "error",
            "-i", str(path),
            "-map", f"0:{track_index}",
            "-f", "webvtt",
            "pipe:1",
        ]

    async def start(self, path: Path, track_index: int) -> SubtitleExtraction:
        """Start extracting a track.

        Raises:
            ExtractionFailed: If ffmpeg cannot be started
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(path, track_index),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExtractionFailed(f"Cannot run {self.ffmpeg_path}: {e}") from e

        logger.info(f"Extracting subtitle stream {track_index} from {path.name} (pid {process.pid})")
        return SubtitleExtraction(process, track_index, self.chunk_size)

"""Torrent session registry."""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import NotFound, SwarmUnavailable
from .engine import (
    METADATA_PLACEHOLDER,
    PiecePriority,
    SwarmEngine,
    SwarmStatus,
    TorrentFile,
    TorrentLayout,
    extract_info_hash,
    magnet_for,
)

if TYPE_CHECKING:
    from ..subtitles.cache import ProbeCache
    from .scheduler import StreamingScheduler

logger = logging.getLogger(__name__)


@dataclass
class TorrentSession:
    """One active download, owned by the registry."""

    info_hash: str
    name: str
    save_path: Path
    layout: TorrentLayout
    closed: bool = False  # Set once the registry tears the session down

    @property
    def files(self) -> list[TorrentFile]:
        return self.layout.files

    def file(self, index: int) -> TorrentFile:
        """Get a file by index.

        Raises:
            NotFound: If the index is outside the file list
        """
        if index < 0 or index >= len(self.layout.files):
            raise NotFound(f"File {index} not found in {self.info_hash}")
        return self.layout.files[index]

    def file_path(self, index: int) -> Path:
        return self.save_path / self.file(index).path


class SessionRegistry:
    """
    Owns the set of active torrent sessions keyed by info hash.

    Features:
    - Idempotent add: a second add of the same identifier returns the
      existing session, even while the first add is still joining the swarm
    - Bounded swarm join
    - Teardown releases engine resources, stream cursors and probe cache
    """

    def __init__(
        self,
        engine: SwarmEngine,
        download_dir: Path,
        join_timeout: float = 30.0,
        scheduler: "StreamingScheduler | None" = None,
        probe_cache: "ProbeCache | None" = None,
    ):
        self.engine = engine
        self.download_dir = download_dir
        self.join_timeout = join_timeout
        self.scheduler = scheduler
        self.probe_cache = probe_cache

        self._sessions: dict[str, TorrentSession] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, info_hash: str) -> bool:
        return info_hash.lower() in self._sessions

    def sessions(self) -> list[TorrentSession]:
        return list(self._sessions.values())

    async def add(self, locator: str) -> TorrentSession:
        """
        Add a torrent, or return the existing session for it.

        Args:
            locator: Magnet link or bare info hash

        Returns:
            The session, once its file list is known

        Raises:
            InvalidIdentifier: Locator cannot be parsed
            SwarmUnavailable: Metadata did not arrive within the join timeout
        """
        info_hash = extract_info_hash(locator)

        async with self._locks[info_hash]:
            existing = self._sessions.get(info_hash)
            if existing is not None:
                logger.debug(f"Torrent already active: {info_hash}")
                return existing

            save_path = self.download_dir / info_hash
            engine_hash = await self.engine.add_torrent(magnet_for(locator, info_hash), save_path)
            logger.info(f"Joining swarm for {info_hash}")

            try:
                layout = await self.engine.wait_for_layout(engine_hash, self.join_timeout)
            except BaseException as e:
                # Includes cancellation: never leave a half-added torrent behind
                if isinstance(e, SwarmUnavailable):
                    logger.warning(f"Swarm join timed out for {info_hash}")
                else:
                    logger.warning(f"Swarm join for {info_hash} abandoned: {type(e).__name__}")
                await self.engine.remove(engine_hash, delete_files=True)
                raise

            # Every file is selected; streams express urgency per piece
            self.engine.set_file_priority(engine_hash, PiecePriority.NORMAL)

            session = TorrentSession(
                info_hash=info_hash,
                name=layout.name or METADATA_PLACEHOLDER,
                save_path=save_path,
                layout=layout,
            )
            self._sessions[info_hash] = session
            logger.info(f"Torrent added: {session.name} ({len(layout.files)} files, hash: {info_hash})")
            return session

    def get(self, info_hash: str) -> TorrentSession:
        """Get a session by info hash.

        Raises:
            NotFound: If no session exists
        """
        session = self._sessions.get(info_hash.lower())
        if session is None:
            raise NotFound(f"Torrent {info_hash} not found")
        return session

    def status(self, info_hash: str) -> SwarmStatus:
        """Get live swarm status for a session."""
        session = self.get(info_hash)
        status = self.engine.get_status(session.info_hash)
        if status is None:
            raise NotFound(f"Torrent {info_hash} not known to engine")
        if status.name == METADATA_PLACEHOLDER:
            status.name = session.name
        return status

    async def remove(self, info_hash: str) -> None:
        """Tear down a session.

        Raises:
            NotFound: If no session exists (including a repeated removal)
        """
        info_hash = info_hash.lower()
        async with self._locks[info_hash]:
            session = self._sessions.pop(info_hash, None)
            if session is None:
                raise NotFound(f"Torrent {info_hash} not found")

            # Readers still holding the session object stop at their next scheduler call
            session.closed = True
            if self.scheduler is not None:
                self.scheduler.forget(info_hash)
            if self.probe_cache is not None:
                self.probe_cache.evict(info_hash)
            await self.engine.remove(info_hash, delete_files=True)
            logger.info(f"Torrent removed: {info_hash}")

    async def shutdown(self) -> None:
        """Remove every session."""
        for info_hash in list(self._sessions):
            try:
                await self.remove(info_hash)
            except NotFound:
                continue

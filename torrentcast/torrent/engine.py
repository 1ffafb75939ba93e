"""
Swarm engine adapter.

Thin facade over a peer-to-peer download capability. The streaming core only
needs a handful of operations from it: add a torrent, learn its file layout,
ask whether a piece is on disk, and push piece/file priorities. Everything
else (peer wire protocol, DHT, trackers) stays inside the engine.

Supports:
- Embedded libtorrent (in-process, no external daemon)
"""

import asyncio
import base64
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable

from ..errors import InvalidIdentifier, SwarmUnavailable

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {"mp4", "mkv", "avi", "webm", "mov", "flv", "wmv"}
SUBTITLE_EXTENSIONS = {"srt", "vtt", "sub", "ass", "ssa", "sbv"}

METADATA_PLACEHOLDER = "Waiting for metadata..."

_HASH_RE = re.compile(r"^(?:[a-fA-F0-9]{40}|[a-zA-Z2-7]{32})$")
_MAGNET_HASH_RE = re.compile(r"xt=urn:btih:([a-fA-F0-9]{40}|[a-zA-Z2-7]{32})(?:&|$)")


class TorrentState(str, Enum):
    """Torrent download states."""

    METADATA = "metadata"
    CHECKING = "checking"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    SEEDING = "seeding"
    COMPLETED = "completed"
    ERROR = "error"
    UNKNOWN = "unknown"


class FileKind(str, Enum):
    """Coarse file classification used for content types and the UI."""

    VIDEO = "video"
    SUBTITLE = "subtitle"
    OTHER = "other"


class PiecePriority(int, Enum):
    """Piece/file download priority levels (libtorrent scale)."""

    SKIP = 0  # Don't download
    LOW = 1
    NORMAL = 4
    HIGH = 6
    TOP = 7


@dataclass
class TorrentFile:
    """Information about a file within a torrent."""

    index: int  # File index within torrent
    name: str  # File name
    path: str  # Full path within torrent
    size: int  # Size in bytes
    offset: int  # Offset within the concatenated torrent data
    kind: FileKind = FileKind.OTHER


@dataclass
class TorrentLayout:
    """Piece geometry and file list of a torrent whose metadata is known."""

    info_hash: str
    name: str
    piece_length: int
    num_pieces: int
    total_size: int
    files: list[TorrentFile] = field(default_factory=list)


@dataclass
class SwarmStatus:
    """Status information for a torrent."""

    info_hash: str
    name: str
    state: TorrentState
    progress: float  # 0.0 to 1.0
    download_speed: int  # bytes/sec
    upload_speed: int  # bytes/sec
    peers: int
    seeds: int = 0


def file_kind(name: str) -> FileKind:
    """Infer the kind of a file from its extension."""
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    if ext in VIDEO_EXTENSIONS:
        return FileKind.VIDEO
    if ext in SUBTITLE_EXTENSIONS:
        return FileKind.SUBTITLE
    return FileKind.OTHER


def _normalize_hash(hash_val: str) -> str:
    if len(hash_val) == 32:
        hash_val = base64.b32decode(hash_val.upper()).hex()
    return hash_val.lower()


def extract_info_hash(locator: str) -> str:
    """Derive the content identifier from a magnet link or bare info hash.

    Raises:
        InvalidIdentifier: If no v1 info hash can be found
    """
    locator = (locator or "").strip()
    if _HASH_RE.match(locator):
        return _normalize_hash(locator)
    if locator.startswith("magnet:"):
        match = _MAGNET_HASH_RE.search(locator)
        if match:
            return _normalize_hash(match.group(1))
    raise InvalidIdentifier("Cannot derive info hash from locator", {"locator": locator[:80]})


def magnet_for(locator: str, info_hash: str) -> str:
    """Return a magnet URI for the locator, building one for bare hashes."""
    if locator.strip().startswith("magnet:"):
        return locator.strip()
    return f"magnet:?xt=urn:btih:{info_hash}"


class SwarmEngine(ABC):
    """Abstract base class for swarm engines."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name of this engine."""
        ...

    async def start(self) -> None:
        """Open the underlying swarm session."""

    async def shutdown(self) -> None:
        """Remove every torrent and close the swarm session."""

    @abstractmethod
    async def add_torrent(self, locator: str, save_path: Path) -> str:
        """
        Begin downloading a torrent.

        Returns:
            Info hash (lowercase hex)
        """
        ...

    @abstractmethod
    def get_layout(self, info_hash: str) -> TorrentLayout | None:
        """Return the file layout, or None while metadata is pending."""
        ...

    @abstractmethod
    def get_status(self, info_hash: str) -> SwarmStatus | None:
        """Get status of a torrent by hash."""
        ...

    @abstractmethod
    def have_piece(self, info_hash: str, index: int) -> bool:
        """Check whether a piece is verified and on disk."""
        ...

    @abstractmethod
    def set_piece_priority(
        self,
        info_hash: str,
        indices: Iterable[int],
        priority: PiecePriority,
    ) -> None:
        """Set download priority for pieces.

        TOP priority additionally requests the pieces in the given order.
        """
        ...

    @abstractmethod
    def set_file_priority(self, info_hash: str, priority: PiecePriority) -> None:
        """Set download priority for every file in the torrent."""
        ...

    @abstractmethod
    async def remove(self, info_hash: str, delete_files: bool = True) -> bool:
        """Remove a torrent, optionally deleting files."""
        ...

    @abstractmethod
    def torrent_count(self) -> int:
        """Number of torrents known to the engine."""
        ...

    def global_stats(self) -> tuple[int, int]:
        """Aggregate (download_speed, upload_speed) across all torrents."""
        return 0, 0

    async def wait_for_layout(
        self,
        info_hash: str,
        timeout: float,
        poll_interval: float = 0.1,
    ) -> TorrentLayout:
        """Wait until the file list of a torrent is known.

        Raises:
            SwarmUnavailable: If metadata does not arrive within ``timeout``
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            layout = self.get_layout(info_hash)
            if layout is not None:
                return layout
            if loop.time() >= deadline:
                raise SwarmUnavailable(
                    f"No metadata for {info_hash} after {timeout:.0f}s",
                    {"info_hash": info_hash},
                )
            await asyncio.sleep(poll_interval)


# =============================================================================
# Embedded Engine (libtorrent)
# =============================================================================


class LibtorrentEngine(SwarmEngine):
    """
    Embedded swarm engine using libtorrent.

    No external daemon required - runs in-process. Files are allocated
    sparsely so any piece can be written (and read back) out of order.
    """

    DEADLINE_STEP_MS = 50

    def __init__(self, listen_interfaces: str = "0.0.0.0:6881"):
        self.listen_interfaces = listen_interfaces
        self._session = None
        self._handles: dict[str, object] = {}

    @property
    def name(self) -> str:
        return "Embedded (libtorrent)"

    async def start(self) -> None:
        import libtorrent as lt

        if self._session is not None:
            return
        self._session = lt.session({
            "listen_interfaces": self.listen_interfaces,
            "enable_dht": True,
            "enable_lsd": True,
            "enable_upnp": True,
            "enable_natpmp": True,
            "announce_to_all_tiers": True,
            "announce_to_all_trackers": True,
        })
        logger.info(f"libtorrent {lt.__version__} session listening on {self.listen_interfaces}")

    async def shutdown(self) -> None:
        for info_hash in list(self._handles):
            await self.remove(info_hash, delete_files=True)
        if self._session is not None:
            self._session.pause()
            self._session = None

    def _get_session(self):
        if self._session is None:
            raise RuntimeError("libtorrent session not started")
        return self._session

    def _handle(self, info_hash: str):
        handle = self._handles.get(info_hash)
        if handle is None or not handle.is_valid():
            return None
        return handle

    async def add_torrent(self, locator: str, save_path: Path) -> str:
        import libtorrent as lt

        session = self._get_session()
        try:
            params = lt.parse_magnet_uri(locator)
        except RuntimeError as e:
            raise InvalidIdentifier(f"libtorrent rejected locator: {e}") from e

        save_path.mkdir(parents=True, exist_ok=True)
        params.save_path = str(save_path)
        params.storage_mode = lt.storage_mode_t.storage_mode_sparse

        handle = session.add_torrent(params)
        info_hash = str(handle.info_hashes().v1).lower()
        self._handles[info_hash] = handle
        logger.debug(f"Added torrent {info_hash} to libtorrent session")
        return info_hash

    def get_layout(self, info_hash: str) -> TorrentLayout | None:
        handle = self._handle(info_hash)
        if handle is None or not handle.status().has_metadata:
            return None
        ti = handle.torrent_file()
        if ti is None:
            return None

        storage = ti.files()
        files = []
        for i in range(storage.num_files()):
            name = storage.file_name(i)
            files.append(TorrentFile(
                index=i,
                name=name,
                path=storage.file_path(i),
                size=storage.file_size(i),
                offset=storage.file_offset(i),
                kind=file_kind(name),
            ))

        return TorrentLayout(
            info_hash=info_hash,
            name=ti.name(),
            piece_length=ti.piece_length(),
            num_pieces=ti.num_pieces(),
            total_size=ti.total_size(),
            files=files,
        )

    def _map_state(self, status) -> TorrentState:
        """Map libtorrent state to TorrentState."""
        if status.errc and status.errc.value():
            return TorrentState.ERROR
        if status.paused:
            return TorrentState.PAUSED
        state_lower = str(status.state).lower()
        if "metadata" in state_lower:
            return TorrentState.METADATA
        elif "check" in state_lower:
            return TorrentState.CHECKING
        elif "seed" in state_lower:
            return TorrentState.SEEDING
        elif "finish" in state_lower:
            return TorrentState.COMPLETED
        elif "download" in state_lower:
            return TorrentState.DOWNLOADING
        return TorrentState.UNKNOWN

    def get_status(self, info_hash: str) -> SwarmStatus | None:
        handle = self._handle(info_hash)
        if handle is None:
            return None
        s = handle.status()
        return SwarmStatus(
            info_hash=info_hash,
            name=s.name or METADATA_PLACEHOLDER,
            state=self._map_state(s),
            progress=s.progress,
            download_speed=s.download_rate,
            upload_speed=s.upload_rate,
            peers=s.num_peers,
            seeds=s.num_seeds,
        )

    def have_piece(self, info_hash: str, index: int) -> bool:
        handle = self._handle(info_hash)
        return bool(handle is not None and handle.have_piece(index))

    def set_piece_priority(
        self,
        info_hash: str,
        indices: Iterable[int],
        priority: PiecePriority,
    ) -> None:
        handle = self._handle(info_hash)
        if handle is None:
            return
        for position, index in enumerate(indices):
            handle.piece_priority(index, int(priority))
            if priority == PiecePriority.TOP:
                handle.set_piece_deadline(index, position * self.DEADLINE_STEP_MS)
            else:
                handle.reset_piece_deadline(index)

    def set_file_priority(self, info_hash: str, priority: PiecePriority) -> None:
        handle = self._handle(info_hash)
        if handle is None:
            return
        ti = handle.torrent_file()
        if ti is None:
            return
        handle.prioritize_files([int(priority)] * ti.num_files())

    async def remove(self, info_hash: str, delete_files: bool = True) -> bool:
        import libtorrent as lt

        handle = self._handles.pop(info_hash, None)
        if handle is None:
            return False
        try:
            if delete_files:
                self._get_session().remove_torrent(handle, lt.options_t.delete_files)
            else:
                self._get_session().remove_torrent(handle)
            return True
        except RuntimeError as e:
            logger.error(f"Failed to remove {info_hash}: {e}")
            return False

    def torrent_count(self) -> int:
        return len(self._handles)

    def global_stats(self) -> tuple[int, int]:
        download = upload = 0
        for info_hash in list(self._handles):
            status = self.get_status(info_hash)
            if status:
                download += status.download_speed
                upload += status.upload_speed
        return download, upload

"""
Torrent side of the streaming core.

- Swarm engine adapter (embedded libtorrent)
- Session registry
- Streaming scheduler
"""

from .engine import (
    FileKind,
    LibtorrentEngine,
    PiecePriority,
    SwarmEngine,
    SwarmStatus,
    TorrentFile,
    TorrentLayout,
    TorrentState,
    extract_info_hash,
    file_kind,
)
from .registry import SessionRegistry, TorrentSession
from .scheduler import StreamCursor, StreamingScheduler, piece_range

__all__ = [
    # Engine
    "SwarmEngine",
    "LibtorrentEngine",
    "SwarmStatus",
    "TorrentState",
    "TorrentFile",
    "TorrentLayout",
    "FileKind",
    "PiecePriority",
    # Registry
    "SessionRegistry",
    "TorrentSession",
    # Scheduler
    "StreamingScheduler",
    "StreamCursor",
    # Utilities
    "extract_info_hash",
    "file_kind",
    "piece_range",
]

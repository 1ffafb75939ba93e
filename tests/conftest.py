"""Pytest configuration and shared fixtures for torrentcast tests."""

import asyncio
import stat
import sys
from pathlib import Path
from typing import Iterable

import pytest

from torrentcast.orchestrator import Config, TorrentCast
from torrentcast.torrent.engine import (
    PiecePriority,
    SwarmEngine,
    SwarmStatus,
    TorrentFile,
    TorrentLayout,
    TorrentState,
    extract_info_hash,
    file_kind,
)

INFO_HASH = "0123456789abcdef0123456789abcdef01234567"
MAGNET = f"magnet:?xt=urn:btih:{INFO_HASH}&dn=Movie"

PIECE_LENGTH = 64

SRT_SAMPLE = (
    "1\n"
    "00:00:01,000 --> 00:00:02,000\n"
    "Hello, world\n"
    "\n"
    "2\n"
    "00:00:03,500 --> 00:00:04,250\n"
    "Second line\n"
)

VIDEO_DATA = bytes(range(256)) * 4  # 1024 bytes, 16 pieces

DEFAULT_FILES = [
    ("Movie/movie.mkv", VIDEO_DATA),
    ("Movie/movie.srt", SRT_SAMPLE.encode()),
    ("Movie/notes.txt", b"nothing to see here\n"),
]


class FakeSwarmEngine(SwarmEngine):
    """In-memory swarm. Pieces become available only when a test says so."""

    def __init__(self, files: list[tuple[str, bytes]] | None = None, piece_length: int = PIECE_LENGTH):
        self.files = files if files is not None else list(DEFAULT_FILES)
        self.piece_length = piece_length
        self.metadata_ready = True
        self.add_delay = 0.0

        self.add_calls: list[str] = []
        self.removed: list[str] = []
        self.priority_log: list[tuple[list[int], PiecePriority]] = []
        self.priorities: dict[int, PiecePriority] = {}
        self.file_priority: PiecePriority | None = None
        self._torrents: dict[str, dict] = {}

    @property
    def name(self) -> str:
        return "fake"

    @property
    def data(self) -> bytes:
        return b"".join(content for _, content in self.files)

    @property
    def num_pieces(self) -> int:
        return max(1, -(-len(self.data) // self.piece_length))

    async def add_torrent(self, locator: str, save_path: Path) -> str:
        self.add_calls.append(locator)
        info_hash = extract_info_hash(locator)
        if self.add_delay:
            await asyncio.sleep(self.add_delay)
        self._torrents[info_hash] = {"save_path": save_path, "available": set()}
        return info_hash

    def get_layout(self, info_hash: str) -> TorrentLayout | None:
        if info_hash not in self._torrents or not self.metadata_ready:
            return None
        files = []
        offset = 0
        for index, (path, content) in enumerate(self.files):
            name = path.rsplit("/", 1)[-1]
            files.append(TorrentFile(
                index=index,
                name=name,
                path=path,
                size=len(content),
                offset=offset,
                kind=file_kind(name),
            ))
            offset += len(content)
        return TorrentLayout(
            info_hash=info_hash,
            name="Movie",
            piece_length=self.piece_length,
            num_pieces=self.num_pieces,
            total_size=offset,
            files=files,
        )

    def get_status(self, info_hash: str) -> SwarmStatus | None:
        torrent = self._torrents.get(info_hash)
        if torrent is None:
            return None
        return SwarmStatus(
            info_hash=info_hash,
            name="Movie",
            state=TorrentState.DOWNLOADING,
            progress=len(torrent["available"]) / self.num_pieces,
            download_speed=1000,
            upload_speed=10,
            peers=3,
            seeds=1,
        )

    def have_piece(self, info_hash: str, index: int) -> bool:
        torrent = self._torrents.get(info_hash)
        return torrent is not None and index in torrent["available"]

    def set_piece_priority(self, info_hash: str, indices: Iterable[int], priority: PiecePriority) -> None:
        indices = list(indices)
        self.priority_log.append((indices, priority))
        for index in indices:
            self.priorities[index] = priority

    def set_file_priority(self, info_hash: str, priority: PiecePriority) -> None:
        self.file_priority = priority

    async def remove(self, info_hash: str, delete_files: bool = True) -> bool:
        self.removed.append(info_hash)
        return self._torrents.pop(info_hash, None) is not None

    def torrent_count(self) -> int:
        return len(self._torrents)

    def global_stats(self) -> tuple[int, int]:
        return 1000 * len(self._torrents), 10 * len(self._torrents)

    def complete_piece(self, info_hash: str, index: int) -> None:
        """Write one piece to disk and mark it available."""
        torrent = self._torrents[info_hash]
        piece_start = index * self.piece_length
        piece_end = min(piece_start + self.piece_length, len(self.data))
        offset = 0
        for path, content in self.files:
            file_start, file_end = offset, offset + len(content)
            offset = file_end
            lo, hi = max(piece_start, file_start), min(piece_end, file_end)
            if lo >= hi:
                continue
            target = torrent["save_path"] / path
            target.parent.mkdir(parents=True, exist_ok=True)
            if not target.exists():
                with open(target, "wb") as f:
                    f.truncate(len(content))
            with open(target, "r+b") as f:
                f.seek(lo - file_start)
                f.write(content[lo - file_start:hi - file_start])
        torrent["available"].add(index)

    def complete_all(self, info_hash: str) -> None:
        for index in range(self.num_pieces):
            self.complete_piece(info_hash, index)


@pytest.fixture
def engine() -> FakeSwarmEngine:
    return FakeSwarmEngine()


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        download_dir=tmp_path / "downloads",
        lookahead_bytes=128,
        chunk_size=32,
        poll_interval=0.01,
        join_timeout=0.3,
        stall_timeout=0.3,
        probe_timeout=2.0,
        probe_prefix_bytes=256,
    )


@pytest.fixture
def torrentcast(config, engine) -> TorrentCast:
    return TorrentCast(config, engine=engine)


@pytest.fixture
def make_script(tmp_path):
    """Create an executable Python script standing in for a media binary."""

    def _make(name: str, body: str) -> str:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n{body}")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make

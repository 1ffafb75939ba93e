"""Tests for the session registry."""

import asyncio

import pytest

from torrentcast.errors import InvalidIdentifier, NotFound, SwarmUnavailable
from torrentcast.subtitles import SubtitleTrack
from torrentcast.torrent import FileKind, PiecePriority

from .conftest import INFO_HASH, MAGNET


class TestSessionRegistry:
    """Tests for adding, looking up and removing sessions."""

    @pytest.mark.asyncio
    async def test_add_returns_layout(self, torrentcast, engine, config):
        session = await torrentcast.registry.add(MAGNET)

        assert session.info_hash == INFO_HASH
        assert session.name == "Movie"
        assert session.save_path == config.download_dir / INFO_HASH
        assert [f.name for f in session.files] == ["movie.mkv", "movie.srt", "notes.txt"]
        assert [f.kind for f in session.files] == [FileKind.VIDEO, FileKind.SUBTITLE, FileKind.OTHER]
        assert engine.file_priority == PiecePriority.NORMAL
        assert INFO_HASH in torrentcast.registry
        assert len(torrentcast.registry) == 1

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self, torrentcast, engine):
        first = await torrentcast.registry.add(MAGNET)
        second = await torrentcast.registry.add(INFO_HASH.upper())

        assert first is second
        assert len(engine.add_calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_add_creates_one_session(self, torrentcast, engine):
        engine.add_delay = 0.05

        sessions = await asyncio.gather(*(torrentcast.registry.add(MAGNET) for _ in range(5)))

        assert all(s is sessions[0] for s in sessions)
        assert len(engine.add_calls) == 1
        assert len(torrentcast.registry) == 1

    @pytest.mark.asyncio
    async def test_bare_hash_gets_magnet(self, torrentcast, engine):
        await torrentcast.registry.add(INFO_HASH)

        assert engine.add_calls == [f"magnet:?xt=urn:btih:{INFO_HASH}"]

    @pytest.mark.asyncio
    async def test_invalid_locator(self, torrentcast, engine):
        with pytest.raises(InvalidIdentifier):
            await torrentcast.registry.add("not a torrent")
        with pytest.raises(InvalidIdentifier):
            await torrentcast.registry.add("magnet:?dn=missing-hash")

        assert engine.add_calls == []

    @pytest.mark.asyncio
    async def test_join_timeout(self, torrentcast, engine):
        engine.metadata_ready = False

        with pytest.raises(SwarmUnavailable):
            await torrentcast.registry.add(MAGNET)

        assert engine.removed == [INFO_HASH]
        assert len(torrentcast.registry) == 0
        assert engine.torrent_count() == 0

    @pytest.mark.asyncio
    async def test_cancelled_join_removes_torrent(self, torrentcast, engine):
        engine.metadata_ready = False
        torrentcast.registry.join_timeout = 5.0

        task = asyncio.create_task(torrentcast.registry.add(MAGNET))
        await asyncio.sleep(0.05)
        assert engine.torrent_count() == 1
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.removed == [INFO_HASH]
        assert engine.torrent_count() == 0
        assert len(torrentcast.registry) == 0

        # The per-hash lock was released, so a later add goes through
        engine.metadata_ready = True
        session = await asyncio.wait_for(torrentcast.registry.add(MAGNET), timeout=1.0)
        assert session.info_hash == INFO_HASH

    @pytest.mark.asyncio
    async def test_get_unknown(self, torrentcast):
        with pytest.raises(NotFound):
            torrentcast.registry.get(INFO_HASH)

    @pytest.mark.asyncio
    async def test_status(self, torrentcast, engine):
        await torrentcast.registry.add(MAGNET)
        engine.complete_piece(INFO_HASH, 0)

        status = torrentcast.registry.status(INFO_HASH)

        assert status.name == "Movie"
        assert status.progress == pytest.approx(1 / engine.num_pieces)
        assert status.peers == 3

    @pytest.mark.asyncio
    async def test_remove_tears_down(self, torrentcast, engine):
        session = await torrentcast.registry.add(MAGNET)
        engine.complete_all(INFO_HASH)
        await torrentcast.scheduler.ensure_range(session, 0, 0, 10)
        torrentcast.probe_cache.put(INFO_HASH, 0, [SubtitleTrack(index=2, codec="subrip")])

        await torrentcast.registry.remove(INFO_HASH)

        assert INFO_HASH not in torrentcast.registry
        assert engine.removed == [INFO_HASH]
        assert torrentcast.scheduler.cursor(INFO_HASH, 0) is None
        assert torrentcast.probe_cache.get(INFO_HASH, 0) is None
        with pytest.raises(NotFound):
            torrentcast.registry.get(INFO_HASH)

    @pytest.mark.asyncio
    async def test_double_remove(self, torrentcast, engine):
        await torrentcast.registry.add(MAGNET)

        await torrentcast.registry.remove(INFO_HASH)
        with pytest.raises(NotFound):
            await torrentcast.registry.remove(INFO_HASH)

        assert engine.removed == [INFO_HASH]

    @pytest.mark.asyncio
    async def test_add_after_remove(self, torrentcast, engine):
        first = await torrentcast.registry.add(MAGNET)
        await torrentcast.registry.remove(INFO_HASH)
        second = await torrentcast.registry.add(MAGNET)

        assert first is not second
        assert len(engine.add_calls) == 2

    @pytest.mark.asyncio
    async def test_shutdown_removes_everything(self, torrentcast, engine):
        await torrentcast.registry.add(MAGNET)

        await torrentcast.cleanup()

        assert len(torrentcast.registry) == 0
        assert engine.torrent_count() == 0

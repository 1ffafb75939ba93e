"""Tests for swarm engine helpers."""

import base64

import pytest

from torrentcast.errors import InvalidIdentifier
from torrentcast.torrent import FileKind, extract_info_hash, file_kind
from torrentcast.torrent.engine import magnet_for

from .conftest import INFO_HASH, MAGNET


class TestExtractInfoHash:
    """Tests for deriving the content identifier."""

    def test_bare_hex_hash(self):
        assert extract_info_hash(INFO_HASH) == INFO_HASH
        assert extract_info_hash(INFO_HASH.upper()) == INFO_HASH

    def test_magnet(self):
        assert extract_info_hash(MAGNET) == INFO_HASH

    def test_magnet_hash_last(self):
        assert extract_info_hash(f"magnet:?dn=Movie&xt=urn:btih:{INFO_HASH}") == INFO_HASH

    def test_base32_hash(self):
        b32 = base64.b32encode(bytes.fromhex(INFO_HASH)).decode()

        assert extract_info_hash(b32) == INFO_HASH
        assert extract_info_hash(f"magnet:?xt=urn:btih:{b32}") == INFO_HASH

    @pytest.mark.parametrize("locator", [
        "",
        "   ",
        "hello",
        INFO_HASH[:-1],
        "magnet:?dn=Movie",
        "magnet:?xt=urn:btih:xyz",
        "https://example.com/movie.torrent",
    ])
    def test_invalid(self, locator):
        with pytest.raises(InvalidIdentifier):
            extract_info_hash(locator)


class TestHelpers:
    """Tests for small engine helpers."""

    def test_magnet_for(self):
        assert magnet_for(MAGNET, INFO_HASH) == MAGNET
        assert magnet_for(INFO_HASH, INFO_HASH) == f"magnet:?xt=urn:btih:{INFO_HASH}"

    @pytest.mark.parametrize("name,kind", [
        ("movie.mkv", FileKind.VIDEO),
        ("Movie.MP4", FileKind.VIDEO),
        ("movie.en.srt", FileKind.SUBTITLE),
        ("movie.vtt", FileKind.SUBTITLE),
        ("sample.txt", FileKind.OTHER),
        ("README", FileKind.OTHER),
    ])
    def test_file_kind(self, name, kind):
        assert file_kind(name) == kind

"""torrentcast - progressive HTTP streaming from BitTorrent swarms."""

__version__ = "0.1.0"

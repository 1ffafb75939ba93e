"""Exception hierarchy for torrentcast.

Every error raised by the streaming core derives from ``TorrentCastError`` so
the web layer can map the whole family onto HTTP status codes in one place.
"""

from typing import Any


class TorrentCastError(Exception):
    """Base exception for all torrentcast errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class InvalidIdentifier(TorrentCastError):
    """Locator or info hash could not be parsed."""


class NotFound(TorrentCastError):
    """Unknown session, file, or subtitle track."""


class RangeOutOfBounds(TorrentCastError):
    """Requested bytes lie outside the file."""


class RangeUnsatisfiable(TorrentCastError):
    """Range header cannot be satisfied for a resource of ``size`` bytes."""

    def __init__(self, message: str, size: int, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.size = size


class DownloadStalled(TorrentCastError):
    """No required piece arrived within the stall timeout."""


class SwarmUnavailable(TorrentCastError):
    """Torrent metadata could not be fetched within the join timeout."""


class ProbeFailed(TorrentCastError):
    """Media inspection failed. Always downgraded to an empty track list."""


class ExtractionFailed(TorrentCastError):
    """Subtitle transcode subprocess failed mid-stream."""


class ClientDisconnected(TorrentCastError):
    """Client went away before the response started."""

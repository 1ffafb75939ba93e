"""Subtitle pipeline: probing, extraction and sidecar conversion."""

from .cache import ProbeCache
from .convert import needs_conversion, srt_to_vtt
from .extract import SubtitleExtraction, SubtitleExtractor
from .probe import SubtitleProber, SubtitleTrack, parse_subtitle_streams

__all__ = [
    "ProbeCache",
    "SubtitleExtraction",
    "SubtitleExtractor",
    "SubtitleProber",
    "SubtitleTrack",
    "needs_conversion",
    "parse_subtitle_streams",
    "srt_to_vtt",
]

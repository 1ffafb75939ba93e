"""Sidecar subtitle conversion to WebVTT."""

import re

VTT_HEADER = "WEBVTT\n\n"

_SRT_TIMESTAMP = re.compile(r"(\d{2}:\d{2}:\d{2}),(\d{3})")


def needs_conversion(name: str) -> bool:
    """Whether a sidecar file must be converted before serving as WebVTT."""
    return name.lower().endswith(".srt")


def srt_to_vtt(srt: str) -> str:
    """Convert SubRip text to WebVTT.

    Only timestamp punctuation changes and a header is prepended; every other
    character is kept as-is.
    """
    return VTT_HEADER + _SRT_TIMESTAMP.sub(r"\1.\2", srt)

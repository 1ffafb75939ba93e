"""Tests for sidecar conversion, probe parsing and the probe cache."""

from torrentcast.subtitles import ProbeCache, SubtitleTrack, needs_conversion, parse_subtitle_streams, srt_to_vtt


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSrtToVtt:
    """Tests for SubRip to WebVTT conversion."""

    def test_single_cue(self):
        srt = "1\n00:00:01,000 --> 00:00:02,000\nHello, world\n"

        assert srt_to_vtt(srt) == "WEBVTT\n\n1\n00:00:01.000 --> 00:00:02.000\nHello, world\n"

    def test_only_timestamps_change(self):
        srt = "7\n01:02:03,456 --> 01:02:04,789\n12,500 people, 3,000 cars\n"

        vtt = srt_to_vtt(srt)

        assert "01:02:03.456 --> 01:02:04.789" in vtt
        assert "12,500 people, 3,000 cars" in vtt

    def test_empty_input(self):
        assert srt_to_vtt("") == "WEBVTT\n\n"

    def test_needs_conversion(self):
        assert needs_conversion("movie.srt")
        assert needs_conversion("MOVIE.SRT")
        assert not needs_conversion("movie.vtt")
        assert not needs_conversion("movie.ass")


class TestParseSubtitleStreams:
    """Tests for reading ffprobe stream listings."""

    def test_picks_subtitle_streams(self):
        payload = {"streams": [
            {"index": 0, "codec_type": "video", "codec_name": "h264"},
            {"index": 1, "codec_type": "audio", "codec_name": "aac"},
            {
                "index": 2,
                "codec_type": "subtitle",
                "codec_name": "subrip",
                "tags": {"language": "eng", "title": "English"},
                "disposition": {"default": 1, "forced": 0},
            },
            {
                "index": 3,
                "codec_type": "subtitle",
                "codec_name": "ass",
                "disposition": {"default": 0, "forced": 1},
            },
        ]}

        tracks = parse_subtitle_streams(payload)

        assert tracks == [
            SubtitleTrack(index=2, codec="subrip", language="eng", title="English", forced=False, default=True),
            SubtitleTrack(index=3, codec="ass", language="und", title="Subtitle 3", forced=True, default=False),
        ]

    def test_no_streams(self):
        assert parse_subtitle_streams({}) == []
        assert parse_subtitle_streams({"streams": [{"index": 0, "codec_type": "video"}]}) == []


class TestProbeCache:
    """Tests for the TTL probe cache."""

    def test_put_and_get(self):
        cache = ProbeCache(ttl=10, clock=FakeClock())
        tracks = [SubtitleTrack(index=2, codec="subrip")]

        cache.put("abc", 0, tracks)

        assert cache.get("abc", 0) == tracks
        assert cache.get("abc", 1) is None

    def test_empty_result_is_cached(self):
        cache = ProbeCache(ttl=10, clock=FakeClock())

        cache.put("abc", 0, [])

        assert cache.get("abc", 0) == []

    def test_entries_expire(self):
        clock = FakeClock()
        cache = ProbeCache(ttl=10, clock=clock)
        cache.put("abc", 0, [])

        clock.now += 9.9
        assert cache.get("abc", 0) == []

        clock.now += 0.1
        assert cache.get("abc", 0) is None
        assert len(cache) == 0

    def test_evict_by_info_hash(self):
        cache = ProbeCache(clock=FakeClock())
        cache.put("abc", 0, [])
        cache.put("abc", 3, [])
        cache.put("def", 0, [])

        assert cache.evict("abc") == 2
        assert cache.get("def", 0) == []
        assert len(cache) == 1
        assert cache.evict("abc") == 0

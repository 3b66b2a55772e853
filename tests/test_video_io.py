from __future__ import annotations

import types

import pytest

from framepipe import video_io
from framepipe.errors import PreflightFailure, PreflightParseFailure, ProbeFailure
from framepipe.video_io import (
    DEFAULT_FPS,
    VideoInfo,
    build_preflight_args,
    build_probe_args,
    parse_rational,
    parse_showinfo_size,
    probe_output_size,
    probe_video_info,
)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("30000/1001", 30000 / 1001),
        ("25/1", 25.0),
        ("0/0", 0.0),
        ("24", 24.0),
        ("", 0.0),
        ("abc/def", 0.0),
        ("nonsense", 0.0),
    ],
)
def test_parse_rational(text, expected):
    assert parse_rational(text) == pytest.approx(expected)


def test_probe_args_exact():
    assert build_probe_args("in.mp4") == [
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height,avg_frame_rate",
        "-of", "json",
        "-i", "in.mp4",
    ]


def test_preflight_args_with_and_without_scale():
    plain = build_preflight_args("in.mp4")
    assert plain == [
        "-hide_banner", "-loglevel", "info", "-nostats", "-i", "in.mp4",
        "-vf", "showinfo", "-frames:v", "1", "-f", "null", "-",
    ]
    scaled = build_preflight_args("in.mp4", "1280:-2")
    assert scaled[scaled.index("-vf") + 1] == "scale=1280:-2,showinfo"
    assert build_preflight_args("in.mp4", "   ")[7] == "showinfo"


def test_parse_showinfo_size():
    line = "[Parsed_showinfo_1 @ 0x1] n: 0 pts: 0 fmt:yuv420p sar:1/1 s:1280x720 i:P"
    assert parse_showinfo_size(line) == (1280, 720)
    assert parse_showinfo_size("no size here") is None
    assert parse_showinfo_size("") is None


def test_probe_reads_stream_fields(fake_ffmpeg, video_path, monkeypatch):
    monkeypatch.setenv("FAKE_WIDTH", "640")
    monkeypatch.setenv("FAKE_HEIGHT", "360")
    monkeypatch.setenv("FAKE_FPS", "30000/1001")
    info = probe_video_info(video_path, ffprobe=fake_ffmpeg)
    assert (info.width, info.height) == (640, 360)
    assert info.fps == pytest.approx(30000 / 1001)


@pytest.mark.parametrize("rate", ["0/0", "0/1"])
def test_probe_substitutes_default_fps(fake_ffmpeg, video_path, monkeypatch, rate):
    monkeypatch.setenv("FAKE_FPS", rate)
    info = probe_video_info(video_path, ffprobe=fake_ffmpeg)
    assert info.fps == pytest.approx(DEFAULT_FPS)
    assert info.fps == pytest.approx(23.976, abs=1e-3)


def test_probe_failure_carries_stderr(fake_ffmpeg, video_path, monkeypatch):
    monkeypatch.setenv("FAKE_PROBE_FAIL", "1")
    with pytest.raises(ProbeFailure, match="Invalid data"):
        probe_video_info(video_path, ffprobe=fake_ffmpeg)


def test_probe_without_streams_fails(fake_ffmpeg, video_path, monkeypatch):
    monkeypatch.setenv("FAKE_PROBE_GARBAGE", "1")
    with pytest.raises(ProbeFailure):
        probe_video_info(video_path, ffprobe=fake_ffmpeg)


class _FakeContainer:
    def __init__(self, width, height, rate):
        stream = types.SimpleNamespace(width=width, height=height, average_rate=rate, base_rate=None)
        self.streams = types.SimpleNamespace(video=[stream])
        self.closed = False

    def close(self):
        self.closed = True


def test_probe_falls_back_to_pyav_without_ffprobe(monkeypatch, video_path):
    container = _FakeContainer(1920, 1080, 50)
    monkeypatch.setattr(video_io, "ffprobe_path", lambda: None)
    monkeypatch.setattr(video_io.av, "open", lambda path: container)
    info = probe_video_info(video_path)
    assert info == VideoInfo(1920, 1080, 50.0)
    assert container.closed


def test_pyav_fallback_missing_rate_uses_default(monkeypatch, video_path):
    monkeypatch.setattr(video_io, "ffprobe_path", lambda: None)
    monkeypatch.setattr(video_io.av, "open", lambda path: _FakeContainer(8, 8, None))
    assert probe_video_info(video_path).fps == pytest.approx(DEFAULT_FPS)


def test_pyav_fallback_open_error_is_probe_failure(monkeypatch, video_path):
    def boom(path):
        raise OSError("no such file")

    monkeypatch.setattr(video_io, "ffprobe_path", lambda: None)
    monkeypatch.setattr(video_io.av, "open", boom)
    with pytest.raises(ProbeFailure):
        probe_video_info(video_path)


def test_preflight_reports_source_size(fake_ffmpeg, video_path):
    assert probe_output_size(video_path, None, fake_ffmpeg) == (320, 240)


def test_preflight_reports_scaled_size(fake_ffmpeg, video_path):
    assert probe_output_size(video_path, "160:120", fake_ffmpeg) == (160, 120)


def test_preflight_without_output_fails(fake_ffmpeg, video_path, monkeypatch):
    monkeypatch.setenv("FAKE_PREFLIGHT", "silent")
    with pytest.raises(PreflightFailure) as ei:
        probe_output_size(video_path, None, fake_ffmpeg)
    assert not isinstance(ei.value, PreflightParseFailure)


def test_preflight_unparseable_output_fails(fake_ffmpeg, video_path, monkeypatch):
    monkeypatch.setenv("FAKE_PREFLIGHT", "garbage")
    with pytest.raises(PreflightParseFailure, match="Duration"):
        probe_output_size(video_path, None, fake_ffmpeg)


def test_ffmpeg_path_prefers_env(monkeypatch, tmp_path):
    exe = tmp_path / "ffmpeg"
    exe.write_text("")
    monkeypatch.setenv("FRAMEPIPE_FFMPEG", str(exe))
    assert video_io.ffmpeg_path() == str(exe)


def test_ffprobe_path_prefers_env(monkeypatch, tmp_path):
    exe = tmp_path / "ffprobe"
    exe.write_text("")
    monkeypatch.setenv("FRAMEPIPE_FFPROBE", str(exe))
    assert video_io.ffprobe_path() == str(exe)


def test_require_ffmpeg_raises_when_missing(monkeypatch):
    monkeypatch.setattr(video_io, "ffmpeg_path", lambda: None)
    with pytest.raises(FileNotFoundError):
        video_io.require_ffmpeg()

from __future__ import annotations

import csv
import os
import stat
import sys
from pathlib import Path

import pytest

from framepipe import main as cli


FAKE_FFMPEG = Path(__file__).with_name("fake_ffmpeg.py")

pytestmark = pytest.mark.skipif(os.name == "nt", reason="shell wrapper for the fake decoder")


@pytest.fixture
def fake_bins(tmp_path, monkeypatch, fake_ffmpeg):
    """Executable ffmpeg/ffprobe wrappers that discovery picks up from the env."""
    script = tmp_path / "fake-ff"
    script.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_FFMPEG}" "$@"\n')
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("FRAMEPIPE_FFMPEG", str(script))
    monkeypatch.setenv("FRAMEPIPE_FFPROBE", str(script))
    monkeypatch.setenv("FAKE_FRAMES", "6")
    return script


def test_cli_reports_brightness_and_writes_csv(fake_bins, video_path, tmp_path, capsys):
    out_csv = tmp_path / "out" / "luma.csv"
    rc = cli.main([video_path, "--workers", "2", "--queue", "4", "--no-hwaccel", "--csv", str(out_csv)])
    assert rc == 0
    text = capsys.readouterr().out
    assert "Processed 6 frames" in text
    assert "Brightness (6 samples)" in text

    with open(out_csv, newline="") as f:
        rows = list(csv.reader(f))
    assert rows[0] == ["frame", "time_secs", "value"]
    assert [r[0] for r in rows[1:]] == [str(i) for i in range(6)]
    assert rows[2][1] == "0.040"
    # frame i is filled with byte i, so luma is i/255
    assert float(rows[4][2]) == pytest.approx(3 / 255, abs=1e-4)


def test_cli_nits_metric(fake_bins, video_path, capsys):
    rc = cli.main([video_path, "--metric", "nits", "--max-frames", "2", "--layout", "rgba"])
    assert rc == 0
    text = capsys.readouterr().out
    assert "Processed 2 frames" in text
    assert "nits" in text


def test_cli_config_file_with_overrides(fake_bins, video_path, tmp_path, capsys):
    cfg = tmp_path / "cfg.json"
    cfg.write_text('{"max_frames": 5, "workers": 1}')
    rc = cli.main([video_path, "--config", str(cfg), "--max-frames", "3"])
    assert rc == 0
    assert "Processed 3 frames" in capsys.readouterr().out


def test_cli_probe_failure_exit_code(fake_bins, video_path, monkeypatch):
    monkeypatch.setenv("FAKE_PROBE_FAIL", "1")
    assert cli.main([video_path]) == 1


def test_config_from_args():
    args = cli.build_parser().parse_args(
        ["in.mkv", "--scale", "640:-2", "--keyframes", "--layout", "yuv420p", "--bt709", "--full-range"]
    )
    cfg = cli.config_from_args(args)
    assert cfg.scale == "640:-2"
    assert cfg.keyframes_only is True
    assert cfg.layout == "yuv420p"
    assert cfg.bt709 is True
    assert cfg.limited_range is False
    assert cfg.hwaccel is True

from __future__ import annotations

import sys
from pathlib import Path

import pytest

FAKE_FFMPEG = Path(__file__).with_name("fake_ffmpeg.py")

_FAKE_VARS = (
    "FAKE_WIDTH", "FAKE_HEIGHT", "FAKE_FPS", "FAKE_FRAMES", "FAKE_HANG_AFTER", "FAKE_HANG_PARTIAL",
    "FAKE_FRAME_DELAY", "FAKE_STDERR_BYTES", "FAKE_EXIT_CODE", "FAKE_PARTIAL_TAIL",
    "FAKE_PREFLIGHT", "FAKE_PROBE_FAIL", "FAKE_PROBE_GARBAGE",
)


@pytest.fixture
def fake_ffmpeg(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Command prefix that runs the fake decoder with a clean FAKE_* environment."""
    for name in _FAKE_VARS:
        monkeypatch.delenv(name, raising=False)
    return [sys.executable, str(FAKE_FFMPEG)]


@pytest.fixture
def video_path(tmp_path: Path) -> str:
    # The fake never opens it; real ffmpeg would.
    p = tmp_path / "clip.mkv"
    p.write_bytes(b"")
    return str(p)

import os
from pathlib import Path
from typing import Dict, Optional, Tuple


def _exe_name(base: str) -> str:
    return f"{base}.exe" if os.name == "nt" else base


def resolve_ffmpeg_bins(ffmpeg_dir: str | os.PathLike) -> Tuple[Optional[str], Optional[str]]:
    """Given a folder, return absolute paths to (ffmpeg, ffprobe) if found.

    Accepts either the root directory or its ``bin`` subfolder.
    """

    if not ffmpeg_dir:
        return None, None
    d = Path(ffmpeg_dir).expanduser()
    try:
        d = d.resolve()
    except OSError:
        # Resolving can fail on some network paths; fall back to raw path
        pass
    ffmpeg: Optional[str] = None
    ffprobe: Optional[str] = None
    for root in (d, d / "bin"):
        p = root / _exe_name("ffmpeg")
        q = root / _exe_name("ffprobe")
        if ffmpeg is None and p.is_file():
            ffmpeg = str(p)
        if ffprobe is None and q.is_file():
            ffprobe = str(q)
        if ffmpeg and ffprobe:
            break
    return ffmpeg, ffprobe


def set_ffmpeg_env(ffmpeg_dir: str | os.PathLike) -> Dict[str, str]:
    """Resolve binaries and set the env vars ``video_io`` discovery reads first."""

    ffmpeg, ffprobe = resolve_ffmpeg_bins(ffmpeg_dir)
    applied: Dict[str, str] = {}
    if ffmpeg:
        os.environ["FRAMEPIPE_FFMPEG"] = ffmpeg
        applied["FRAMEPIPE_FFMPEG"] = ffmpeg
    if ffprobe:
        os.environ["FRAMEPIPE_FFPROBE"] = ffprobe
        applied["FRAMEPIPE_FFPROBE"] = ffprobe
    return applied


def ensure_dir(p):
    if p:
        os.makedirs(p, exist_ok=True)


def format_duration(seconds: float) -> str:
    seconds = max(0.0, float(seconds))
    if seconds < 60:
        return f"{seconds:.2f}s"
    m, s = divmod(seconds, 60)
    if m < 60:
        return f"{int(m)}m {s:04.1f}s"
    h, m = divmod(m, 60)
    return f"{int(h)}h {int(m):02d}m {int(s):02d}s"

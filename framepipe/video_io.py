#!/usr/bin/env python3
from __future__ import annotations
import subprocess, json, os, re, shutil
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import av
import imageio_ffmpeg as iioff

from .errors import PreflightFailure, PreflightParseFailure, ProbeFailure

log = logging.getLogger(__name__)

# NTSC film rate. Containers that omit avg_frame_rate (or report 0/0) are far
# more often 23.976 content than anything else.
DEFAULT_FPS = 24000.0 / 1001.0

_SHOWINFO_SIZE_RE = re.compile(r"s:(\d+)x(\d+)")

# A binary is either a path or a command prefix such as [python, "stub.py"].
Command = Union[str, os.PathLike, Sequence[str]]


@dataclass(frozen=True)
class VideoInfo:
    width: int
    height: int
    fps: float


def _as_cmd(exe: Command) -> list[str]:
    if isinstance(exe, (str, os.PathLike)):
        return [os.fspath(exe)]
    return [str(part) for part in exe]


def ffprobe_path() -> Optional[str]:
    """
    Locate ffprobe. Order: explicit env → imageio bundle → PATH.
    """
    # 0) Explicit env override
    for env in ("FRAMEPIPE_FFPROBE", "FFPROBE", "FFPROBE_BIN"):
        p = os.environ.get(env)
        if p and os.path.exists(p):
            return p
    # 1) Sibling of the bundled ffmpeg (imageio ships ffmpeg only, some caches add ffprobe)
    try:
        ffm = iioff.get_ffmpeg_exe()
        if ffm and os.path.exists(ffm):
            d = Path(ffm).parent
            exact = d / ("ffprobe.exe" if os.name == "nt" else "ffprobe")
            if exact.is_file():
                return str(exact)
            for cand in d.glob("ffprobe*"):
                if cand.is_file():
                    return str(cand)
            log.debug("imageio ffmpeg dir had no ffprobe: %s", d)
    except Exception as e:
        log.debug("imageio-ffmpeg ffprobe sibling scan failed: %s", e)
    # 2) PATH fallback
    return shutil.which("ffprobe.exe" if os.name == "nt" else "ffprobe")


def ffmpeg_path() -> Optional[str]:
    """
    Locate ffmpeg. Order: explicit env → PATH → imageio bundle.
    """
    for env in ("FRAMEPIPE_FFMPEG", "FFMPEG", "FFMPEG_BIN"):
        p = os.environ.get(env)
        if p and os.path.exists(p):
            return p
    cand = shutil.which("ffmpeg.exe" if os.name == "nt" else "ffmpeg")
    if cand:
        return cand
    try:
        return iioff.get_ffmpeg_exe()
    except Exception as e:
        log.warning("imageio-ffmpeg.get_ffmpeg_exe() failed: %s", e)
        return None


def require_ffmpeg(ffmpeg: Optional[Command] = None) -> list[str]:
    exe = ffmpeg if ffmpeg is not None else ffmpeg_path()
    if not exe:
        raise FileNotFoundError("ffmpeg not found; set FRAMEPIPE_FFMPEG or install ffmpeg")
    return _as_cmd(exe)


def parse_rational(s: str) -> float:
    """Parse ``"num/den"`` (or a plain number) to a float; 0.0 when unusable."""
    s = (s or "").strip()
    parts = s.split("/")
    if len(parts) == 2:
        try:
            n = float(parts[0])
            d = float(parts[1])
        except ValueError:
            return 0.0
        return n / d if d != 0 else 0.0
    try:
        return float(s)
    except ValueError:
        return 0.0


def build_probe_args(path: str) -> list[str]:
    return [
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height,avg_frame_rate",
        "-of", "json",
        "-i", path,
    ]


def _info_from_probe_json(text: str, path: str) -> VideoInfo:
    try:
        meta = json.loads(text or "{}")
        s = meta["streams"][0]
        w = int(s["width"])
        h = int(s["height"])
        afr = str(s.get("avg_frame_rate") or "0/1")
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise ProbeFailure(f"ffprobe output for {path} is missing stream fields: {e!r}") from e
    fps = parse_rational(afr)
    if fps <= 0:
        log.info("Probe: avg_frame_rate=%r unusable for %s; assuming %.3f fps", afr, path, DEFAULT_FPS)
        fps = DEFAULT_FPS
    return VideoInfo(w, h, fps)


def _probe_video_info_pyav(path: str) -> VideoInfo:
    try:
        ct = av.open(path)
    except Exception as e:
        raise ProbeFailure(f"pyav could not open {path}: {e}") from e
    try:
        vs = ct.streams.video[0]
        w, h = int(vs.width), int(vs.height)
        fps = 0.0
        r = getattr(vs, "average_rate", None) or getattr(vs, "base_rate", None)
        if r:
            fps = float(r)
    except (IndexError, AttributeError, TypeError, ValueError) as e:
        raise ProbeFailure(f"pyav found no usable video stream in {path}: {e!r}") from e
    finally:
        ct.close()
    if fps <= 0:
        fps = DEFAULT_FPS
    return VideoInfo(w, h, fps)


def probe_video_info(path: str, ffprobe: Optional[Command] = None) -> VideoInfo:
    """Return width/height/fps of the first video stream.

    Uses ffprobe when one is available (explicit argument or discovery) and
    falls back to PyAV only when no ffprobe binary exists at all.
    """
    exe = ffprobe if ffprobe is not None else ffprobe_path()
    if not exe:
        log.info("Probe: no ffprobe found; using PyAV for %s", path)
        return _probe_video_info_pyav(path)
    args = _as_cmd(exe) + build_probe_args(path)
    log.debug("Probe cmd: %s", args)
    p = subprocess.run(args, capture_output=True, text=True, errors="replace", check=False)
    if p.returncode != 0:
        raise ProbeFailure(f"ffprobe failed (exit {p.returncode}): {(p.stderr or '').strip()}")
    info = _info_from_probe_json(p.stdout, path)
    log.info("Probe: %s → %dx%d @ %.3f fps", path, info.width, info.height, info.fps)
    return info


def build_preflight_args(path: str, scale: Optional[str] = None) -> list[str]:
    vf = "showinfo" if not (scale or "").strip() else f"scale={scale},showinfo"
    return [
        "-hide_banner",
        "-loglevel", "info",
        "-nostats",
        "-i", path,
        "-vf", vf,
        "-frames:v", "1",
        "-f", "null",
        "-",
    ]


def parse_showinfo_size(text: str) -> Optional[Tuple[int, int]]:
    m = _SHOWINFO_SIZE_RE.search(text or "")
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def probe_output_size(
    path: str, scale: Optional[str] = None, ffmpeg: Optional[Command] = None
) -> Tuple[int, int]:
    """Decode one frame through ``[scale,]showinfo`` and read the real output size.

    A scale expression such as ``1280:-2`` makes the decoded size depend on the
    source aspect ratio and rounding, so probed dimensions cannot be trusted.
    """
    args = require_ffmpeg(ffmpeg) + build_preflight_args(path, scale)
    log.debug("Preflight cmd: %s", args)
    p = subprocess.run(args, capture_output=True, text=True, errors="replace", check=False)
    out = ((p.stdout or "") + (p.stderr or "")).strip()
    if not out:
        raise PreflightFailure(f"ffmpeg preflight produced no output for {path} (exit {p.returncode})")
    size = parse_showinfo_size(out)
    if size is None:
        tail = "\n".join(out.splitlines()[-20:])
        raise PreflightParseFailure(f"Could not parse output size from showinfo.\n{tail}")
    return size

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    # --- decode ---
    scale: Optional[str] = None          # ffmpeg scale expression, e.g. "1280:-2"
    keyframes_only: bool = False         # -skip_frame nokey
    max_frames: Optional[int] = None     # -frames:v N (None/<=0 = whole stream)
    layout: str = "rgba"                 # rgba | yuv420p | yuv420p10le
    hwaccel: bool = True                 # -hwaccel auto
    # --- buffering / workers ---
    queue_capacity: int = 64             # frames in flight between decoder and workers
    workers: Optional[int] = None        # None -> default_worker_count()
    isolate_errors: bool = True          # record callback failures and keep going
    log_every: int = 100                 # worker progress log cadence (frames)
    # --- color ---
    bt709: Optional[bool] = None         # None: BT.601 for 8-bit, BT.709 for 10-bit
    limited_range: bool = True

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2)

    @staticmethod
    def from_json(s: str) -> "PipelineConfig":
        d = json.loads(s)
        c = PipelineConfig()
        known = {f.name for f in fields(PipelineConfig)}
        for k, v in d.items():
            if k not in known:
                log.warning("Ignoring unknown config key %r", k)
                continue
            setattr(c, k, v)
        return c

    def resolved_workers(self) -> int:
        if self.workers and int(self.workers) > 0:
            return int(self.workers)
        return default_worker_count()


def default_worker_count() -> int:
    """Worker threads to use when none are requested.

    ``FRAMEPIPE_WORKERS`` wins; otherwise leave two cores for ffmpeg and the
    producer, but never go below two workers.
    """

    env = os.getenv("FRAMEPIPE_WORKERS", "").strip()
    if env:
        try:
            n = int(env)
            if n > 0:
                return n
        except ValueError:
            log.warning("FRAMEPIPE_WORKERS=%r is not an integer; ignoring", env)
    return max(2, (os.cpu_count() or 4) - 2)


def load_config(path: str | os.PathLike) -> PipelineConfig:
    return PipelineConfig.from_json(Path(path).read_text(encoding="utf-8"))


def save_config(cfg: PipelineConfig, path: str | os.PathLike) -> None:
    Path(path).write_text(cfg.to_json(), encoding="utf-8")

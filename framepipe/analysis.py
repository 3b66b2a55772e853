"""Ready-made per-frame callbacks: average brightness (SDR luma or HDR nits)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import cv2
import numpy as np

from .color import yuv420p10le_to_rgba, yuv420p_to_rgba
from .frames import PooledFrame
from .hdr import pq_nits
from .workers import FrameResults


@dataclass(frozen=True)
class BrightnessSummary:
    count: int
    average: float
    maximum: float


def frame_to_rgba(
    frame: PooledFrame, *, bt709: Optional[bool] = None, limited_range: bool = True
) -> np.ndarray:
    """``(h, w, 4)`` uint8 RGBA for any supported layout.

    ``rgba`` frames come back as a view over the pooled buffer, so copy the
    result if it has to outlive ``frame.release()``.
    """
    w, h = frame.width, frame.height
    if frame.layout == "rgba":
        return frame.array().reshape(h, w, 4)
    if frame.layout == "yuv420p":
        return yuv420p_to_rgba(frame.data, w, h, bt709=bool(bt709), limited_range=limited_range)
    if frame.layout == "yuv420p10le":
        return yuv420p10le_to_rgba(
            frame.data, w, h, bt709=True if bt709 is None else bt709, limited_range=limited_range
        )
    raise ValueError(f"no RGBA conversion for layout {frame.layout!r}")


def rec709_luma(rgba: np.ndarray) -> float:
    """Rec.709 luma of the frame's area average, in [0, 1]."""
    px = cv2.resize(np.ascontiguousarray(rgba), (1, 1), interpolation=cv2.INTER_AREA).reshape(-1)
    return float(0.2126 * px[0] + 0.7152 * px[1] + 0.0722 * px[2]) / 255.0


def mean_pq_nits(rgba: np.ndarray) -> float:
    """Mean BT.2020 luminance (nits) of a PQ-encoded RGBA frame."""
    return float(np.mean(pq_nits(rgba)))


class LumaSampler:
    """Worker callback storing Rec.709 mean luma per frame index."""

    def __init__(self, results: Optional[FrameResults] = None, *, bt709: Optional[bool] = None, limited_range: bool = True):
        self.results = results if results is not None else FrameResults()
        self.bt709 = bt709
        self.limited_range = limited_range

    def __call__(self, frame: PooledFrame, worker_id: int) -> None:
        rgba = frame_to_rgba(frame, bt709=self.bt709, limited_range=self.limited_range)
        self.results[frame.index] = rec709_luma(rgba)


class NitsSampler(LumaSampler):
    """Worker callback storing mean PQ luminance (nits) per frame index."""

    def __call__(self, frame: PooledFrame, worker_id: int) -> None:
        rgba = frame_to_rgba(frame, bt709=self.bt709, limited_range=self.limited_range)
        self.results[frame.index] = mean_pq_nits(rgba)


def summarize(values: FrameResults | Iterable[float]) -> BrightnessSummary:
    vals = values.values() if isinstance(values, FrameResults) else list(values)
    if not vals:
        return BrightnessSummary(0, 0.0, 0.0)
    return BrightnessSummary(len(vals), float(np.mean(vals)), float(np.max(vals)))

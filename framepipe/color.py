"""Planar YUV 4:2:0 → packed RGBA with integer (fixed-point) color math.

Both converters share one shape: each chroma sample covers a 2x2 block of
luma, chroma terms are computed once per block, and every output channel is
``clip8((C + term + rounder) >> shift)`` with ``C = (Y - yOff) * yMul``.
The 8-bit and 10-bit paths differ only in sample width, chroma center,
luma offset and final shift. Results are bit-exact with the scalar integer
formulation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .errors import InvalidFrameGeometry

# Row pairs converted per band; bounds the size of the int32 temporaries.
_ROW_PAIRS_PER_BAND = 32


@dataclass(frozen=True)
class YuvCoefficients:
    """Fixed-point (x256) matrix for one range/standard combination."""

    y_mul: int
    y_off: int
    r_v: int
    g_u: int
    g_v: int
    b_u: int


BT601_LIMITED = YuvCoefficients(y_mul=298, y_off=16, r_v=409, g_u=-100, g_v=-208, b_u=516)
BT709_LIMITED = YuvCoefficients(y_mul=298, y_off=16, r_v=459, g_u=-55, g_v=-136, b_u=541)
FULL_RANGE = YuvCoefficients(y_mul=256, y_off=0, r_v=359, g_u=-88, g_v=-183, b_u=453)


def coefficients_for(limited_range: bool = True, bt709: bool = False) -> YuvCoefficients:
    if not limited_range:
        return FULL_RANGE
    return BT709_LIMITED if bt709 else BT601_LIMITED


def clip8(values: np.ndarray) -> np.ndarray:
    """Saturate integers to [0, 255] and narrow to uint8."""
    return np.clip(values, 0, 255).astype(np.uint8)


def yuv420p_frame_size(width: int, height: int) -> int:
    """Bytes in one 8-bit yuv420p frame."""
    return width * height + 2 * (width // 2) * (height // 2)


def yuv420p10le_frame_size(width: int, height: int) -> int:
    """Bytes in one yuv420p10le frame (every sample is a 16-bit word)."""
    return 2 * yuv420p_frame_size(width, height)


def _check_geometry(buffer, width: int, height: int, need: int, kind: str) -> np.ndarray:
    if width <= 0 or height <= 0:
        raise InvalidFrameGeometry(f"{kind} needs positive dimensions, got {width}x{height}")
    if (width & 1) or (height & 1):
        raise InvalidFrameGeometry(f"{kind} requires even width and height, got {width}x{height}")
    raw = np.frombuffer(buffer, dtype=np.uint8)
    if raw.size < need:
        raise InvalidFrameGeometry(
            f"buffer holds {raw.size} bytes; a {width}x{height} {kind} frame needs {need}"
        )
    return raw


def _split_planes(samples: np.ndarray, width: int, height: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    c_w, c_h = width // 2, height // 2
    y_size = width * height
    c_size = c_w * c_h
    y = samples[:y_size].reshape(height, width)
    u = samples[y_size : y_size + c_size].reshape(c_h, c_w)
    v = samples[y_size + c_size : y_size + 2 * c_size].reshape(c_h, c_w)
    return y, u, v


def _convert(
    y_plane: np.ndarray,
    u_plane: np.ndarray,
    v_plane: np.ndarray,
    coeffs: YuvCoefficients,
    *,
    y_off: int,
    center: int,
    shift: int,
) -> np.ndarray:
    height, width = y_plane.shape
    rounder = 1 << (shift - 1)
    out = np.empty((height, width, 4), dtype=np.uint8)
    out[..., 3] = 255

    band = 2 * _ROW_PAIRS_PER_BAND
    for top in range(0, height, band):
        bottom = min(top + band, height)
        c_top, c_bottom = top // 2, bottom // 2

        U = u_plane[c_top:c_bottom].astype(np.int32) - center
        V = v_plane[c_top:c_bottom].astype(np.int32) - center
        r_c = coeffs.r_v * V
        g_c = coeffs.g_u * U + coeffs.g_v * V
        b_c = coeffs.b_u * U

        # one chroma term per 2x2 luma block
        r_c = np.repeat(np.repeat(r_c, 2, axis=0), 2, axis=1)
        g_c = np.repeat(np.repeat(g_c, 2, axis=0), 2, axis=1)
        b_c = np.repeat(np.repeat(b_c, 2, axis=0), 2, axis=1)

        C = (y_plane[top:bottom].astype(np.int32) - y_off) * coeffs.y_mul + rounder
        rows = out[top:bottom]
        rows[..., 0] = clip8((C + r_c) >> shift)
        rows[..., 1] = clip8((C + g_c) >> shift)
        rows[..., 2] = clip8((C + b_c) >> shift)
    return out


def yuv420p_to_rgba(
    buffer, width: int, height: int, *, bt709: bool = False, limited_range: bool = True
) -> np.ndarray:
    """Convert one 8-bit yuv420p frame (contiguous Y|U|V planes) to ``(h, w, 4)`` RGBA."""
    raw = _check_geometry(buffer, width, height, yuv420p_frame_size(width, height), "yuv420p")
    coeffs = coefficients_for(limited_range, bt709)
    y, u, v = _split_planes(raw, width, height)
    return _convert(y, u, v, coeffs, y_off=coeffs.y_off, center=128, shift=8)


def yuv420p10le_to_rgba(
    buffer, width: int, height: int, *, bt709: bool = True, limited_range: bool = True
) -> np.ndarray:
    """Convert one yuv420p10le frame (10-bit samples in little-endian words) to 8-bit RGBA.

    The 8-bit coefficient table is reused: luma offset is scaled to 10 bits
    and the two extra bits of precision are dropped by shifting 10 instead of 8.
    """
    raw = _check_geometry(buffer, width, height, yuv420p10le_frame_size(width, height), "yuv420p10le")
    coeffs = coefficients_for(limited_range, bt709)
    n_samples = yuv420p_frame_size(width, height)
    samples = raw[: 2 * n_samples].view("<u2")
    y, u, v = _split_planes(samples, width, height)
    return _convert(y, u, v, coeffs, y_off=coeffs.y_off << 2, center=512, shift=10)

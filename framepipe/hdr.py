"""SMPTE ST 2084 (PQ) decoding to absolute luminance.

Inputs must be the raw UNORM code values of PQ-encoded pixels. Samples that
went through an sRGB/gamma decode first give plausible-looking but wrong
numbers, and nothing here can detect that.
"""

from __future__ import annotations

import numpy as np

PQ_M1 = 2610.0 / 16384.0
PQ_M2 = 2523.0 / 32.0
PQ_C1 = 3424.0 / 4096.0
PQ_C2 = 2413.0 / 128.0
PQ_C3 = 2392.0 / 128.0
PQ_PEAK_NITS = 10000.0

# BT.2020 luma weights
BT2020_R = 0.2627
BT2020_G = 0.6780
BT2020_B = 0.0593


def st2084_eotf(e: float) -> float:
    """PQ signal E' in [0, 1] → display luminance in cd/m² (nits)."""
    e = min(max(float(e), 0.0), 1.0)
    p = e ** (1.0 / PQ_M2)
    num = max(p - PQ_C1, 0.0)
    den = PQ_C2 - PQ_C3 * p
    # den <= 0 can only come from rounding right at E'=1
    if den <= 0.0 or num <= 0.0:
        return PQ_PEAK_NITS if e >= 1.0 else 0.0
    return PQ_PEAK_NITS * (num / den) ** (1.0 / PQ_M1)


def rgb_to_nits_pq(r: int, g: int, b: int) -> float:
    """BT.2020 luminance (nits) of one 8-bit pixel holding PQ-encoded RGB."""
    return (
        BT2020_R * st2084_eotf(r / 255.0)
        + BT2020_G * st2084_eotf(g / 255.0)
        + BT2020_B * st2084_eotf(b / 255.0)
    )


def st2084_eotf_array(e: np.ndarray) -> np.ndarray:
    """Vectorised :func:`st2084_eotf` with the same guard semantics."""
    e = np.clip(np.asarray(e, dtype=np.float64), 0.0, 1.0)
    p = np.power(e, 1.0 / PQ_M2)
    num = np.maximum(p - PQ_C1, 0.0)
    den = PQ_C2 - PQ_C3 * p
    ok = (den > 0.0) & (num > 0.0)
    ratio = np.divide(num, den, out=np.zeros_like(num), where=ok)
    out = PQ_PEAK_NITS * np.power(ratio, 1.0 / PQ_M1)
    return np.where(ok, out, np.where(e >= 1.0, PQ_PEAK_NITS, 0.0))


def pq_nits(rgb: np.ndarray) -> np.ndarray:
    """Per-pixel BT.2020 nits for an ``(..., 3|4)`` uint8 PQ image (alpha ignored)."""
    arr = np.asarray(rgb)
    if arr.ndim < 1 or arr.shape[-1] < 3:
        raise ValueError(f"expected trailing RGB(A) channel axis, got shape {arr.shape}")
    lin = st2084_eotf_array(arr[..., :3].astype(np.float64) / 255.0)
    return BT2020_R * lin[..., 0] + BT2020_G * lin[..., 1] + BT2020_B * lin[..., 2]

"""
Radius Array Module - Polar Radius Operations

Lens tracers describe a shape as N radii sampled at equal angles around
the lens centre ("R=" lines, hundredths of mm). This module converts those
arrays between units, rotates them around the circle, fills missing
samples and regularizes traced radii before export.
"""

import math
from pathlib import Path
from typing import Optional, Union

import numpy as np

from .utils import (
    N_SAMPLES,
    HUNDREDTHS_THRESHOLD,
    DESPIKE_WIN,
    SMOOTH_WIN_R,
    CLAMP_K,
    CLAMP_MIN_HUND,
)


def _round_half_up(values) -> np.ndarray:
    # Matches the tracer's integer rounding (0.5 -> 1, -0.5 -> 0)
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5).astype(np.int64)


def parse_r_hundredths(text: str) -> np.ndarray:
    """
    Collect the integer radii of every "R=" line.

    Only lines that start with "R=" (after trimming) are read; tokens are
    separated by ';' and anything that is not an integer is skipped.

    Args:
        text: FIL / trace file contents

    Returns:
        Integer array of radii in hundredths of mm
    """
    out = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line.startswith("R="):
            continue
        for token in line[2:].split(";"):
            token = token.strip()
            try:
                out.append(int(token))
            except ValueError:
                continue
    return np.array(out, dtype=np.int64)


def to_millimetres(values) -> np.ndarray:
    """
    Convert raw radius values to mm.

    Tracers usually write hundredths of mm as integers, but some files
    already carry mm. Any value >= 200 is taken as hundredths.
    """
    arr = np.asarray(values, dtype=np.float64)
    return np.where(arr >= HUNDREDTHS_THRESHOLD, arr / 100.0, arr)


def to_hundredths(radii_mm) -> np.ndarray:
    """Round mm radii to integer hundredths (never negative)."""
    return np.maximum(_round_half_up(np.asarray(radii_mm, dtype=np.float64) * 100.0), 0)


def shift_radii(radii, steps: int) -> np.ndarray:
    """
    Circularly shift a radius array by a number of samples.

    out[i] = r[(i - steps) mod n]
    """
    arr = np.asarray(radii)
    n = len(arr)
    if n == 0:
        return arr.copy()
    shift = steps % n
    if shift == 0:
        return arr.copy()
    return np.roll(arr, shift)


def rotate_radii(radii, angle_deg: float) -> np.ndarray:
    """
    Rotate a radius array by an angle in degrees (CCW positive).

    The angle is converted to a whole number of samples, truncated toward
    zero, so sub-step rotations are ignored.

    Args:
        radii: Radius array (any units)
        angle_deg: Rotation angle in degrees

    Returns:
        New rotated array
    """
    arr = np.asarray(radii)
    n = len(arr)
    if n == 0:
        return arr.copy()
    return shift_radii(arr, angle_to_steps(angle_deg, n))


def fill_missing_circular(radii) -> np.ndarray:
    """
    Fill NaN samples by linear interpolation between finite neighbours.

    The array is treated as circular, so a gap that wraps past the end is
    interpolated between the last and the first finite sample. A single
    finite sample is replicated everywhere; an all-NaN array is returned
    unchanged.
    """
    r = np.asarray(radii, dtype=np.float64)
    n = len(r)
    if n == 0:
        return r.copy()

    hits = np.flatnonzero(np.isfinite(r))
    if len(hits) == 0:
        return r.copy()
    if len(hits) == 1:
        return np.full(n, r[hits[0]])

    out = r.copy()
    for k in range(len(hits)):
        i0 = hits[k]
        i1 = hits[(k + 1) % len(hits)]
        r0, r1 = out[i0], out[i1]
        d = (i1 - i0 + n) % n
        for t in range(1, d):
            a = t / d
            out[(i0 + t) % n] = (1.0 - a) * r0 + a * r1

    return out


def _circular_windows(r: np.ndarray, win: int) -> np.ndarray:
    n = len(r)
    k = win // 2
    idx = (np.arange(n)[:, None] + np.arange(-k, k + 1)[None, :]) % n
    return r[idx]


def median_filter_circular(radii, win: int = DESPIKE_WIN) -> np.ndarray:
    """Circular running median; even or <= 1 windows leave the input as is."""
    r = np.asarray(radii, dtype=np.int64)
    if win <= 1 or win % 2 == 0 or len(r) == 0:
        return r.copy()
    windows = np.sort(_circular_windows(r, win), axis=1)
    return windows[:, win // 2].copy()


def smooth_circular(radii, win: int = SMOOTH_WIN_R) -> np.ndarray:
    """Circular moving average rounded back to integers."""
    r = np.asarray(radii, dtype=np.int64)
    if win <= 1 or win % 2 == 0 or len(r) == 0:
        return r.copy()
    sums = _circular_windows(r, win).sum(axis=1)
    return _round_half_up(sums / float(win))


def clamp_diffs_circular(
    radii,
    k: float = CLAMP_K,
    min_limit: int = CLAMP_MIN_HUND
) -> np.ndarray:
    """
    Robust clamp of sample-to-sample jumps around the circle.

    1. diff[i] = r[i] - r[i-1] (r[-1] = r[n-1])
    2. lim = max(min_limit, k * MAD(|diff|)), MAD floored at 1
    3. clamp each diff to [-lim, lim]
    4. spread the residual one unit at a time so the diffs sum to zero
    5. integrate from r[0] and re-centre on the input mean

    Args:
        radii: Integer radii (hundredths of mm)
        k: MAD multiplier
        min_limit: Minimum clamp in hundredths

    Returns:
        Regularized integer radii, never negative
    """
    r = np.asarray(radii, dtype=np.int64)
    n = len(r)
    if n < 3:
        return r.copy()

    diff = r - np.roll(r, 1)

    mad = max(float(np.median(np.abs(diff))), 1.0)
    lim = int(_round_half_up(max(float(min_limit), k * mad)))
    clamped = np.clip(diff, -lim, lim)

    residual = int(clamped.sum())
    if residual != 0:
        step = -1 if residual > 0 else 1
        count = min(abs(residual), n * 4)
        full, rem = divmod(count, n)
        clamped = clamped + step * full
        clamped[:rem] += step

    out = np.empty(n, dtype=np.int64)
    out[0] = r[0]
    out[1:] = r[0] + np.cumsum(clamped[1:])

    delta = int(_round_half_up(r.mean() - out.mean()))
    return np.maximum(out + delta, 0)


class RadiusBias:
    """
    Per-sample radius correction measured on a reference shape.

    Holds N bias values in mm. Only the deviation from the mean bias is
    applied, so a uniform offset does not change the traced size.
    """

    def __init__(self, bias_mm, shift_steps: int = 0, n_samples: int = N_SAMPLES):
        """
        Initialize radius bias.

        Args:
            bias_mm: N bias values in mm
            shift_steps: Circular shift to align the bias with the trace
            n_samples: Expected number of values
        """
        values = np.asarray(bias_mm, dtype=np.float64)
        if len(values) != n_samples:
            raise ValueError(
                f"Radius bias must have {n_samples} values, got {len(values)}"
            )
        self.n_samples = n_samples
        self.values = shift_radii(values, shift_steps) if shift_steps else values.copy()
        self.mean_mm = float(self.values.mean())

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        shift_steps: int = 0,
        n_samples: int = N_SAMPLES
    ) -> "RadiusBias":
        """
        Load bias values from a text file (one float per line).

        Blank lines and lines starting with '#' are ignored.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Radius bias file not found: {path}")

        values = []
        with path.open("r", encoding="utf-8") as fh:
            for raw in fh:
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                values.append(float(line))

        return cls(values, shift_steps=shift_steps, n_samples=n_samples)

    def apply(self, radii_hundredths) -> np.ndarray:
        """Subtract the bias deviation from integer radii (hundredths)."""
        r = np.asarray(radii_hundredths, dtype=np.int64)
        if len(r) != self.n_samples:
            return r.copy()
        corrected = r - (self.values - self.mean_mm) * 100.0
        return np.maximum(_round_half_up(corrected), 0)


def regularize_radii(
    radii_hundredths,
    bias: Optional[RadiusBias] = None
) -> np.ndarray:
    """
    Clean traced radii before writing them to a FIL.

    despike (median) -> smooth -> bias -> clamp jumps -> smooth
    """
    r = np.asarray(radii_hundredths, dtype=np.int64)
    if len(r) == 0:
        return r.copy()

    out = median_filter_circular(r, DESPIKE_WIN)
    out = smooth_circular(out, SMOOTH_WIN_R)
    if bias is not None:
        out = bias.apply(out)
    out = clamp_diffs_circular(out, CLAMP_K, CLAMP_MIN_HUND)
    out = smooth_circular(out, SMOOTH_WIN_R)
    return out


def radii_are_complete(radii_mm, n_samples: int = N_SAMPLES) -> bool:
    """True when the array has n finite, strictly positive samples."""
    arr = np.asarray(radii_mm, dtype=np.float64)
    return len(arr) == n_samples and bool(np.all(np.isfinite(arr) & (arr > 0)))


def angle_to_steps(angle_deg: float, n_samples: int = N_SAMPLES) -> int:
    """Whole number of samples covered by an angle (truncated toward zero)."""
    return int(math.trunc((angle_deg / 360.0) * n_samples))

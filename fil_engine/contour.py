"""
Contour Module - Polar to Cartesian Reconstruction

Builds mm-space lens contours from tracer radii and converts traced
outlines back to radii.

Convention (right eye, as traced):
    index 0     -> +X
    index N/4   -> +Y (up)
    index N/2   -> -X
    index 3N/4  -> -Y
    counter-clockwise, theta_i = 2*pi*i / N

The left eye uses the same shape mirrored in X.
"""

import math
from typing import Optional, List
from dataclasses import dataclass

import numpy as np

from .utils import (
    N_SAMPLES,
    as_points,
    ensure_closed,
)


@dataclass
class ContourMm:
    """Lens contour in mm, origin at the lens centre, Y up."""
    points: np.ndarray  # (K, 2)

    @property
    def min_x(self) -> float:
        return float(self.points[:, 0].min())

    @property
    def max_x(self) -> float:
        return float(self.points[:, 0].max())

    @property
    def min_y(self) -> float:
        return float(self.points[:, 1].min())

    @property
    def max_y(self) -> float:
        return float(self.points[:, 1].max())

    @property
    def max_abs_x(self) -> float:
        return float(np.abs(self.points[:, 0]).max())

    @property
    def max_abs_y(self) -> float:
        return float(np.abs(self.points[:, 1]).max())

    @property
    def hbox(self) -> float:
        """Horizontal box size (mm)."""
        return max(self.max_x - self.min_x, 0.0)

    @property
    def vbox(self) -> float:
        """Vertical box size (mm)."""
        return max(self.max_y - self.min_y, 0.0)

    @property
    def box_centre(self) -> tuple:
        """Centre of the bounding box (mm)."""
        return ((self.min_x + self.max_x) / 2.0, (self.min_y + self.max_y) / 2.0)

    def __len__(self) -> int:
        return len(self.points)


def polar_angles(n: int) -> np.ndarray:
    """Sample angles for n equally spaced radii (radians)."""
    return 2.0 * np.pi * np.arange(n) / n


def radii_to_contour(radii_mm) -> ContourMm:
    """
    Reconstruct the right-eye contour from radii in mm.

    Args:
        radii_mm: N radii (N >= 10)

    Returns:
        ContourMm with N points (not closed)
    """
    r = np.asarray(radii_mm, dtype=np.float64)
    n = len(r)
    if n < 10:
        raise ValueError(f"Invalid radii array (n={n}), at least 10 samples required")

    theta = polar_angles(n)
    points = np.column_stack([r * np.cos(theta), r * np.sin(theta)])
    return ContourMm(points=points)


def mirror_x(contour: ContourMm) -> ContourMm:
    """Mirror a contour in X (right eye <-> left eye)."""
    pts = contour.points.copy()
    pts[:, 0] = -pts[:, 0]
    return ContourMm(points=pts)


def rotate_contour(contour: ContourMm, degrees: float) -> ContourMm:
    """Rotate a contour about the origin (CCW positive)."""
    if degrees == 0:
        return ContourMm(points=contour.points.copy())

    rad = math.radians(degrees)
    c, s = math.cos(rad), math.sin(rad)
    rot = np.array([[c, -s], [s, c]])
    return ContourMm(points=contour.points @ rot.T)


def cardinal_indices(n: int) -> List[int]:
    """
    Fixed indices of +X, +Y, -X, -Y for an n-sample array.

    Positions are defined on the 800-sample grid and scaled to n.
    """
    def idx(v800: int) -> int:
        return min(max(int((v800 / 800.0) * n), 0), n - 1)

    return [idx(0), idx(200), idx(400), idx(600)]


def contour_from_trace_px(outline_px, px_per_mm: float) -> Optional[ContourMm]:
    """
    Convert a pixel outline from a lens trace to a mm contour.

    The origin is the centre of the outline's pixel bounding box and Y is
    flipped to point up. The returned polyline is closed.

    Args:
        outline_px: Outline points in image pixels
        px_per_mm: Trace scale

    Returns:
        ContourMm, or None when the outline is empty or the scale is invalid
    """
    pts = as_points(outline_px)
    if len(pts) == 0 or not px_per_mm or px_per_mm <= 0:
        return None

    cx = (pts[:, 0].min() + pts[:, 0].max()) / 2.0
    cy = (pts[:, 1].min() + pts[:, 1].max()) / 2.0

    mm = np.column_stack([
        (pts[:, 0] - cx) / px_per_mm,
        -(pts[:, 1] - cy) / px_per_mm,
    ])
    return ContourMm(points=ensure_closed(mm))


def resample_by_arc(points, m: int) -> np.ndarray:
    """
    Resample a closed polyline to m points equally spaced by arc length.

    The last sample is forced onto the first so the result stays closed.
    Degenerate input (fewer than 3 points, m < 3 or zero length) is
    returned closed but otherwise unchanged.
    """
    pts = ensure_closed(points)
    n = len(pts)
    if n < 3 or m < 3:
        return pts.copy()

    seg = np.hypot(np.diff(pts[:, 0]), np.diff(pts[:, 1]))
    total = float(seg.sum())
    if total <= 1e-6:
        return pts.copy()

    cum = np.concatenate([[0.0], np.cumsum(seg)])
    targets = np.arange(m) * (total / (m - 1))

    out = np.empty((m, 2))
    for k, target in enumerate(targets):
        i = int(np.searchsorted(cum, target, side="left")) - 1
        i = min(max(i, 0), len(seg) - 1)
        denom = max(seg[i], 1e-6)
        t = min(max((target - cum[i]) / denom, 0.0), 1.0)
        out[k] = pts[i] + (pts[i + 1] - pts[i]) * t

    out[-1] = out[0]
    return out


def smooth_closed_polyline(points, win: int) -> np.ndarray:
    """
    Circular moving average of a closed polyline.

    Even or <= 1 windows return the input unchanged.
    """
    pts = as_points(points)
    if win <= 1 or win % 2 == 0 or len(pts) == 0:
        return pts.copy()

    n = len(pts)
    k = win // 2
    idx = (np.arange(n)[:, None] + np.arange(-k, k + 1)[None, :]) % n
    out = pts[idx].mean(axis=1)
    out[-1] = out[0]
    return out


def radii_from_polygon(points_mm, n_samples: int = N_SAMPLES) -> np.ndarray:
    """
    Ray-cast radii from the origin to a closed polygon.

    For each theta_k = 2*pi*k/N the nearest positive intersection with the
    polygon edges is kept. Rays that miss stay NaN (fill them with
    fill_missing_circular).

    Args:
        points_mm: Polygon in mm, centred on the lens centre
        n_samples: Number of rays

    Returns:
        Radii in mm with NaN for misses
    """
    poly = ensure_closed(points_mm)
    if len(poly) < 4:
        raise ValueError(f"Polygon too small for ray casting (size={len(poly)})")

    p = poly[:-1]
    v = poly[1:] - poly[:-1]
    valid = (np.abs(v[:, 0]) + np.abs(v[:, 1])) >= 1e-12
    p, v = p[valid], v[valid]

    theta = polar_angles(n_samples)
    dx = np.cos(theta)[:, None]
    dy = np.sin(theta)[:, None]

    denom = dx * v[None, :, 1] - dy * v[None, :, 0]
    with np.errstate(divide="ignore", invalid="ignore"):
        t = (p[None, :, 0] * v[None, :, 1] - p[None, :, 1] * v[None, :, 0]) / denom
        u = (p[None, :, 0] * dy - p[None, :, 1] * dx) / denom

    hit = (np.abs(denom) >= 1e-9) & (t > 1e-6) & (u >= 0.0) & (u <= 1.0)
    t = np.where(hit, t, np.inf)

    best = t.min(axis=1)
    return np.where(np.isfinite(best), best, np.nan)

"""
Utility functions for the FIL geometry engine.
"""

import math
import numpy as np
import cv2
from typing import Tuple, Optional


# Lens tracer sampling (R= lines)
N_SAMPLES = 800
HUNDREDTHS_THRESHOLD = 200.0  # Values at/above this are hundredths of mm

# Outline -> FIL export
RESAMPLE_ARC = 1600
SMOOTH_WIN_POLY = 9

# Radii regularization (hundredths of mm)
DESPIKE_WIN = 5
SMOOTH_WIN_R = 7
CLAMP_K = 7.0
CLAMP_MIN_HUND = 12

# Face measurement
DEFAULT_PX_PER_MM = 6.0
MIN_PX_PER_MM = 1.5
MAX_PX_PER_MM = 20.0
DEFAULT_DBL_MM = 18.0  # Distance between lenses when not supplied
BRIDGE_OFFSET_MM = 0.3
NASAL_BAND_HALF_MM = 3.0
USEFUL_DIAMETER_MARGIN_MM = 2.0

# Export header
DEFAULT_MANUFACTURER = "MEDIRDNP"


def as_points(points) -> np.ndarray:
    """Coerce a sequence of (x, y) pairs into a float64 (K, 2) array."""
    arr = np.asarray(points, dtype=np.float64)
    if arr.size == 0:
        return arr.reshape(0, 2)
    return arr.reshape(-1, 2)


def ensure_closed(points) -> np.ndarray:
    """Append the first point if the polyline is not already closed."""
    pts = as_points(points)
    if len(pts) < 2:
        return pts
    if np.array_equal(pts[0], pts[-1]):
        return pts
    return np.vstack([pts, pts[:1]])


def min_distance_to_outline(point: Tuple[float, float], outline) -> float:
    """
    Minimum distance from a point to a closed outline.

    Uses cv2.pointPolygonTest with measureDist=True, which returns the
    signed distance to the nearest edge (closing segment included).

    Args:
        point: (x, y)
        outline: Polyline points, at least 2

    Returns:
        Distance in the outline's units, +inf for degenerate outlines
    """
    pts = as_points(outline)
    if len(pts) < 2:
        return float("inf")
    contour = pts.astype(np.float32).reshape(-1, 1, 2)
    signed = cv2.pointPolygonTest(contour, (float(point[0]), float(point[1])), True)
    return abs(float(signed))


def max_distance_to_points(point: Tuple[float, float], points) -> float:
    """Largest distance from a point to any of the given points."""
    pts = as_points(points)
    if len(pts) == 0:
        return 0.0
    d = np.hypot(pts[:, 0] - point[0], pts[:, 1] - point[1])
    return float(d.max())


def closed_perimeter(points) -> float:
    """Perimeter of a polygon, closing segment included."""
    pts = as_points(points)
    if len(pts) < 2:
        return 0.0
    return float(cv2.arcLength(pts.astype(np.float32).reshape(-1, 1, 2), True))


def is_finite_number(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


def is_finite_point(p: Optional[Tuple[float, float]]) -> bool:
    return p is not None and math.isfinite(p[0]) and math.isfinite(p[1])


def fmt(value: Optional[float], decimals: int = 2) -> str:
    """Format a number with '.' decimals, 'NaN' for missing values."""
    if not is_finite_number(value):
        return "NaN"
    return f"{value:.{decimals}f}"


def percent_diff(reference: float, measured: float) -> float:
    """Absolute percent difference of measured vs reference (0 if no reference)."""
    if reference <= 0:
        return 0.0
    return abs(measured / reference - 1.0) * 100.0

"""
Mapping Module - px <-> mm Coordinate Mapping and Eye Placement

Moves lens contours between mm space (lens centre origin, Y up) and
face-photo pixels (top-left origin, Y down), and places the right and
left lens about the facial midline.

In a photo taken facing the patient, the right eye (OD) appears on the
image left.
"""

import math
from typing import Optional, Tuple
from dataclasses import dataclass

import numpy as np
import cv2

from .contour import ContourMm
from .utils import as_points, percent_diff, DEFAULT_DBL_MM


@dataclass
class Midline:
    """
    Facial midline through two image points (e.g. nose bridge and mouth).

    The line may be oblique, so its x position depends on the row.
    """
    a: Tuple[float, float]
    b: Tuple[float, float]
    source: str = "manual"
    estimated: bool = False

    @classmethod
    def vertical(cls, x: float, source: str = "manual") -> "Midline":
        """Vertical midline at a fixed column."""
        return cls(a=(x, 0.0), b=(x, 1.0), source=source)

    def x_at(self, y: float, width: Optional[int] = None) -> float:
        """
        Column of the midline at row y.

        Args:
            y: Image row
            width: Image width; when given the result is clamped to it

        Returns:
            x in pixels
        """
        dy = self.b[1] - self.a[1]
        if abs(dy) < 1e-3:
            x = (self.a[0] + self.b[0]) * 0.5
        else:
            t = (y - self.a[1]) / dy
            x = self.a[0] + t * (self.b[0] - self.a[0])
        if width is not None:
            x = min(max(x, 0.0), float(width - 1))
        return x

    def to_dict(self) -> dict:
        return {
            "a": list(self.a),
            "b": list(self.b),
            "source": self.source,
            "estimated": self.estimated,
        }


@dataclass
class RingInner:
    """Inner ellipse of a frame rim in the photo."""
    centre_px: Tuple[float, float]
    rx_px: float
    ry_px: float


@dataclass
class RingProjection:
    """Contour projected into both rims."""
    outline_od_px: np.ndarray
    outline_oi_px: np.ndarray
    matrix_od: np.ndarray
    matrix_oi: np.ndarray
    px_per_mm_od: float
    px_per_mm_oi: float
    px_per_mm_face: float


@dataclass
class PlacedPair:
    """Both lenses placed on the face photo."""
    outline_od_px: np.ndarray
    outline_oi_px: np.ndarray
    centre_od_px: Tuple[float, float]
    centre_oi_px: Tuple[float, float]
    box_od_px: Tuple[float, float, float, float]  # (left, top, right, bottom)
    box_oi_px: Tuple[float, float, float, float]
    px_per_mm: float
    dbl_mm: float

    def to_dict(self) -> dict:
        return {
            "centre_od_px": list(self.centre_od_px),
            "centre_oi_px": list(self.centre_oi_px),
            "box_od_px": list(self.box_od_px),
            "box_oi_px": list(self.box_oi_px),
            "px_per_mm": self.px_per_mm,
            "dbl_mm": self.dbl_mm,
        }


@dataclass
class FaceBoxCheck:
    """
    How the traced box reads on the face at the face scale.

    Quality check only: differences are reported, never enforced.
    """
    hbox_mm: float
    vbox_mm: float
    hbox_mm_from_face: float
    vbox_mm_from_face: float
    diff_hbox_pct: float
    diff_vbox_pct: float

    def to_dict(self) -> dict:
        return {
            "hbox_mm": self.hbox_mm,
            "vbox_mm": self.vbox_mm,
            "hbox_mm_from_face": self.hbox_mm_from_face,
            "vbox_mm_from_face": self.vbox_mm_from_face,
            "diff_hbox_pct": self.diff_hbox_pct,
            "diff_vbox_pct": self.diff_vbox_pct,
        }


def mm_to_px(
    points_mm,
    centre_px: Tuple[float, float],
    px_per_mm: float,
    mirror: bool = False
) -> np.ndarray:
    """
    Map mm points (Y up) to image pixels (Y down).

    Args:
        points_mm: (K, 2) points
        centre_px: Pixel position of the mm origin
        px_per_mm: Scale
        mirror: Mirror X before mapping (left eye from a right-eye shape)

    Returns:
        (K, 2) pixel points
    """
    pts = as_points(points_mm)
    sx = -px_per_mm if mirror else px_per_mm
    return np.column_stack([
        centre_px[0] + pts[:, 0] * sx,
        centre_px[1] - pts[:, 1] * px_per_mm,
    ])


def px_to_mm(points_px, centre_px: Tuple[float, float], px_per_mm: float) -> np.ndarray:
    """Map image pixels to mm about centre_px (Y up)."""
    if px_per_mm <= 0:
        raise ValueError(f"Invalid px/mm: {px_per_mm}")
    pts = as_points(points_px)
    return np.column_stack([
        (pts[:, 0] - centre_px[0]) / px_per_mm,
        -(pts[:, 1] - centre_px[1]) / px_per_mm,
    ])


def mirror_about_midline(points_px, midline: Midline) -> np.ndarray:
    """Reflect pixel points across the midline, row by row."""
    pts = as_points(points_px)
    out = pts.copy()
    for i, (x, y) in enumerate(pts):
        out[i, 0] = 2.0 * midline.x_at(y) - x
    return out


def apply_affine(points, matrix: np.ndarray) -> np.ndarray:
    """Apply a 2x3 affine matrix to (K, 2) points."""
    pts = as_points(points)
    if len(pts) == 0:
        return pts
    mapped = cv2.transform(pts.reshape(-1, 1, 2), np.asarray(matrix, dtype=np.float64))
    return mapped.reshape(-1, 2)


def fit_to_ring(
    max_abs_x_mm: float,
    max_abs_y_mm: float,
    ring: RingInner,
    mirror: bool = False
) -> np.ndarray:
    """
    Affine mm -> px mapping that fits a contour inside a rim ellipse.

    Uses one uniform scale (the tighter of the two axes), flips Y and
    translates to the ring centre.

    Returns:
        2x3 affine matrix
    """
    safe_x = max_abs_x_mm if max_abs_x_mm > 1e-9 else 1e-9
    safe_y = max_abs_y_mm if max_abs_y_mm > 1e-9 else 1e-9

    s = min(ring.rx_px / safe_x, ring.ry_px / safe_y)
    sx = -s if mirror else s

    return np.array([
        [sx, 0.0, ring.centre_px[0]],
        [0.0, -s, ring.centre_px[1]],
    ], dtype=np.float64)


def uniform_scale(matrix: np.ndarray) -> float:
    """px/mm encoded in a fit_to_ring matrix."""
    return abs(float(matrix[0, 0]))


def project_to_rings(contour_od: ContourMm, ring_od: RingInner, ring_oi: RingInner) -> RingProjection:
    """
    Project the traced right-eye shape into both detected rims.

    The right eye is drawn as traced, the left eye mirrored.
    """
    m_od = fit_to_ring(contour_od.max_abs_x, contour_od.max_abs_y, ring_od)
    m_oi = fit_to_ring(contour_od.max_abs_x, contour_od.max_abs_y, ring_oi, mirror=True)

    s_od = uniform_scale(m_od)
    s_oi = uniform_scale(m_oi)

    return RingProjection(
        outline_od_px=apply_affine(contour_od.points, m_od),
        outline_oi_px=apply_affine(contour_od.points, m_oi),
        matrix_od=m_od,
        matrix_oi=m_oi,
        px_per_mm_od=s_od,
        px_per_mm_oi=s_oi,
        px_per_mm_face=max((s_od + s_oi) * 0.5, 1e-6),
    )


def _box_of(points) -> Tuple[float, float, float, float]:
    pts = as_points(points)
    return (
        float(pts[:, 0].min()), float(pts[:, 1].min()),
        float(pts[:, 0].max()), float(pts[:, 1].max()),
    )


def place_pair(
    contour_od: ContourMm,
    midline: Midline,
    centre_y_px: float,
    px_per_mm: float,
    dbl_mm: float = DEFAULT_DBL_MM
) -> PlacedPair:
    """
    Place both lenses symmetrically about the midline.

    The right-eye box centre sits (DBL/2 + HBOX/2) mm left of the midline
    at centre_y_px; the left eye is its reflection across the midline,
    drawn with the mirrored shape.

    Args:
        contour_od: Right-eye contour (mm)
        midline: Facial midline
        centre_y_px: Row of both box centres
        px_per_mm: Face scale
        dbl_mm: Distance between lenses

    Returns:
        PlacedPair
    """
    if not (px_per_mm > 0 and math.isfinite(px_per_mm)):
        raise ValueError(f"Invalid px/mm: {px_per_mm}")

    mid_x = midline.x_at(centre_y_px)
    offset_px = (dbl_mm * 0.5 + contour_od.hbox * 0.5) * px_per_mm

    # Shape positioned so its box centre lands on the placement centre
    bcx, bcy = contour_od.box_centre
    pts = contour_od.points - np.array([bcx, bcy])

    centre_od = (mid_x - offset_px, centre_y_px)
    centre_oi = (2.0 * mid_x - centre_od[0], centre_y_px)

    outline_od = mm_to_px(pts, centre_od, px_per_mm)
    outline_oi = mm_to_px(pts, centre_oi, px_per_mm, mirror=True)

    return PlacedPair(
        outline_od_px=outline_od,
        outline_oi_px=outline_oi,
        centre_od_px=centre_od,
        centre_oi_px=centre_oi,
        box_od_px=_box_of(outline_od),
        box_oi_px=_box_of(outline_oi),
        px_per_mm=px_per_mm,
        dbl_mm=dbl_mm,
    )


def face_box_check(
    hbox_mm: float,
    vbox_mm: float,
    box_od_px: Tuple[float, float, float, float],
    box_oi_px: Tuple[float, float, float, float],
    px_per_mm: float
) -> FaceBoxCheck:
    """
    Compare the traced HBOX/VBOX with the boxes seen on the face.

    Raises:
        ValueError: If the scale or the traced box is not positive
    """
    if px_per_mm <= 0:
        raise ValueError("Face px/mm must be > 0")
    if hbox_mm <= 0 or vbox_mm <= 0:
        raise ValueError("HBOX/VBOX must be > 0")

    avg_w = ((box_od_px[2] - box_od_px[0]) + (box_oi_px[2] - box_oi_px[0])) * 0.5
    avg_h = ((box_od_px[3] - box_od_px[1]) + (box_oi_px[3] - box_oi_px[1])) * 0.5

    h_face = avg_w / px_per_mm
    v_face = avg_h / px_per_mm

    return FaceBoxCheck(
        hbox_mm=hbox_mm,
        vbox_mm=vbox_mm,
        hbox_mm_from_face=h_face,
        vbox_mm_from_face=v_face,
        diff_hbox_pct=percent_diff(hbox_mm, h_face),
        diff_vbox_pct=percent_diff(vbox_mm, v_face),
    )

"""
Measurement Module - Pupillary Distances and Frame Fitting Values

Computes, from pixel inputs and a face scale:

- DNP (monocular pupillary distance to the facial midline) per eye
- total PD, or NPD when only one pupil is usable
- pupil-to-nasal-rim distances and the bridge width
- fitting heights (pupil to bottom of rim)
- useful lens diameter around each pupil

Pupils arrive already detected; this module never looks at an image.
"""

import math
from typing import Optional, Tuple, List
from dataclasses import dataclass, field

import numpy as np

from .mapping import Midline
from .utils import (
    DEFAULT_PX_PER_MM,
    MIN_PX_PER_MM,
    MAX_PX_PER_MM,
    BRIDGE_OFFSET_MM,
    NASAL_BAND_HALF_MM,
    USEFUL_DIAMETER_MARGIN_MM,
    as_points,
    is_finite_number,
    is_finite_point,
    min_distance_to_outline,
    max_distance_to_points,
)


NAN = float("nan")

MODE_BINOCULAR = "BINOC"
MODE_MONO_OD = "MONO_OD"
MODE_MONO_OI = "MONO_OI"


@dataclass
class FaceMetrics:
    """Measurements of one face photo (mm, NaN when not available)."""
    mode: str
    px_per_mm: float
    dnp_od_mm: float = NAN
    dnp_oi_mm: float = NAN
    dnp_total_mm: float = NAN
    npd_mm: float = NAN
    bridge_mm: float = NAN
    pn_od_mm: float = NAN
    pn_oi_mm: float = NAN
    height_od_mm: float = NAN
    height_oi_mm: float = NAN
    useful_diameter_od_mm: float = NAN
    useful_diameter_oi_mm: float = NAN
    pupil_source: str = "input"
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        def clean(v):
            return v if is_finite_number(v) else None

        return {
            "mode": self.mode,
            "pupil_source": self.pupil_source,
            "px_per_mm": self.px_per_mm,
            "dnp_od_mm": clean(self.dnp_od_mm),
            "dnp_oi_mm": clean(self.dnp_oi_mm),
            "dnp_total_mm": clean(self.dnp_total_mm),
            "npd_mm": clean(self.npd_mm),
            "bridge_mm": clean(self.bridge_mm),
            "pn_od_mm": clean(self.pn_od_mm),
            "pn_oi_mm": clean(self.pn_oi_mm),
            "height_od_mm": clean(self.height_od_mm),
            "height_oi_mm": clean(self.height_oi_mm),
            "useful_diameter_od_mm": clean(self.useful_diameter_od_mm),
            "useful_diameter_oi_mm": clean(self.useful_diameter_oi_mm),
            "warnings": self.warnings,
        }


@dataclass
class BoxMetrics:
    """Measurements from rectangular lens boxes (mm)."""
    width_mm: float
    height_mm: float
    diagonal_mm: float
    bridge_mm: float
    dnp_od_mm: float
    dnp_oi_mm: float
    dnp_total_mm: float
    height_od_mm: float
    height_oi_mm: float
    useful_diameter_od_mm: float
    useful_diameter_oi_mm: float
    px_per_mm: float


@dataclass
class OutlineMetrics:
    """Measurements against placed FIL outlines (mm)."""
    dnp_od_mm: float
    dnp_oi_mm: float
    bridge_mm: float
    height_od_mm: float
    height_oi_mm: float
    useful_diameter_od_mm: float
    useful_diameter_oi_mm: float


@dataclass
class ScaleSeed:
    """Face scale seeded from measured rim widths."""
    px_per_mm: float
    px_per_mm_od: Optional[float]
    px_per_mm_oi: Optional[float]
    source: str

    @property
    def is_valid(self) -> bool:
        return is_finite_number(self.px_per_mm)


def sanitize_px_per_mm(px_per_mm: Optional[float], warnings: Optional[List[str]] = None) -> float:
    """
    Keep a face scale inside a plausible range.

    Missing or degenerate scales fall back to DEFAULT_PX_PER_MM.
    """
    if not is_finite_number(px_per_mm) or px_per_mm <= 1e-6:
        if warnings is not None:
            warnings.append(
                f"Invalid px/mm ({px_per_mm}); using fallback {DEFAULT_PX_PER_MM}"
            )
        return DEFAULT_PX_PER_MM
    return min(max(float(px_per_mm), MIN_PX_PER_MM), MAX_PX_PER_MM)


def nasal_x_from_outline(
    outline_px,
    pupil_x: float,
    mid_x: float,
    y_ref: float,
    band_half_px: float
) -> Optional[float]:
    """
    Nasal rim position of a placed lens at the pupil row.

    Keeps outline points within +/-band_half_px of y_ref on the pupil's
    side of the midline and picks a robust quantile of their x: near the
    low end for a pupil right of the midline, near the high end for one
    left of it.

    Returns:
        x in pixels, or None when there is not enough outline
    """
    if outline_px is None:
        return None
    pts = as_points(outline_px)
    if len(pts) < 6:
        return None
    if not all(math.isfinite(v) for v in (pupil_x, mid_x, y_ref, band_half_px)):
        return None

    side = math.copysign(1.0, pupil_x - mid_x) if pupil_x != mid_x else 1.0

    finite = np.isfinite(pts).all(axis=1)
    in_band = np.abs(pts[:, 1] - y_ref) <= band_half_px
    same_side = (pts[:, 0] - mid_x) * side >= -2.0
    xs = np.sort(pts[finite & in_band & same_side, 0])
    if len(xs) == 0:
        return None

    q = 0.12 if side > 0 else 0.88
    idx = min(max(int(q * (len(xs) - 1)), 0), len(xs) - 1)
    i0 = max(idx - 1, 0)
    i2 = min(idx + 1, len(xs) - 1)
    return float((xs[i0] + xs[idx] + xs[i2]) / 3.0)


def pupil_to_nasal_px(
    pupil: Optional[Tuple[float, float]],
    nasal_x: Optional[float],
    mid_x: float
) -> Optional[float]:
    """Horizontal pupil -> nasal rim distance toward the midline (> 0.5 px)."""
    if pupil is None or nasal_x is None:
        return None
    if not (math.isfinite(pupil[0]) and math.isfinite(nasal_x) and math.isfinite(mid_x)):
        return None

    side = 1.0 if pupil[0] >= mid_x else -1.0
    d = (pupil[0] - nasal_x) if side > 0 else (nasal_x - pupil[0])
    if not math.isfinite(d) or d <= 0.5:
        return None
    return d


def height_mm(
    pupil: Optional[Tuple[float, float]],
    bottom_y_px: Optional[float],
    px_per_mm: float
) -> float:
    """Pupil to bottom rim distance (mm), NaN when not available."""
    if not is_finite_point(pupil) or not is_finite_number(bottom_y_px):
        return NAN
    return max(bottom_y_px - pupil[1], 0.0) / px_per_mm


def useful_diameter_mm(
    pupil: Optional[Tuple[float, float]],
    outline_px,
    px_per_mm: float,
    margin_mm: float = USEFUL_DIAMETER_MARGIN_MM
) -> float:
    """
    Minimum blank diameter centred on the pupil that covers the lens.

    Twice the farthest outline point from the pupil, plus a fixed margin.
    """
    if pupil is None or outline_px is None:
        return NAN
    pts = as_points(outline_px)
    if len(pts) == 0 or not is_finite_number(px_per_mm) or px_per_mm <= 1e-9:
        return NAN
    diameter = 2.0 * max_distance_to_points(pupil, pts) / px_per_mm
    return max(diameter + margin_mm, 0.0)


def compute_face_metrics(
    pupil_od: Optional[Tuple[float, float]],
    pupil_oi: Optional[Tuple[float, float]],
    midline: Midline,
    px_per_mm: Optional[float],
    placed_od=None,
    placed_oi=None,
    rim_bottom_od: Optional[float] = None,
    rim_bottom_oi: Optional[float] = None,
    image_width: Optional[int] = None,
    pupil_source: str = "input"
) -> FaceMetrics:
    """
    Compute DNP, bridge, heights and useful diameters for one photo.

    Args:
        pupil_od: Right-eye pupil (px), None if not usable
        pupil_oi: Left-eye pupil (px), None if not usable
        midline: Facial midline
        px_per_mm: Face scale
        placed_od: Placed right-eye outline (px)
        placed_oi: Placed left-eye outline (px)
        rim_bottom_od: Bottom rim row under the right pupil (px)
        rim_bottom_oi: Bottom rim row under the left pupil (px)
        image_width: Clamp midline lookups to the image
        pupil_source: Label of the pupil detector

    Returns:
        FaceMetrics

    Raises:
        ValueError: If neither pupil is usable
    """
    warnings: List[str] = []
    s = sanitize_px_per_mm(px_per_mm, warnings)

    od = pupil_od if is_finite_point(pupil_od) else None
    oi = pupil_oi if is_finite_point(pupil_oi) else None

    if od is not None and oi is not None:
        mode = MODE_BINOCULAR
    elif od is not None:
        mode = MODE_MONO_OD
    elif oi is not None:
        mode = MODE_MONO_OI
    else:
        raise ValueError("No usable pupil for measurement")

    def mid_x_at(y: float) -> float:
        return midline.x_at(y, image_width)

    result = FaceMetrics(mode=mode, px_per_mm=s, pupil_source=pupil_source, warnings=warnings)

    # DNP / NPD against the midline at each pupil's own row
    if mode == MODE_BINOCULAR:
        mid_od = mid_x_at(od[1])
        mid_oi = mid_x_at(oi[1])
        result.dnp_od_mm = abs(od[0] - mid_od) / s
        result.dnp_oi_mm = abs(oi[0] - mid_oi) / s
        result.dnp_total_mm = result.dnp_od_mm + result.dnp_oi_mm
    else:
        pupil = od if mode == MODE_MONO_OD else oi
        result.npd_mm = abs(pupil[0] - mid_x_at(pupil[1])) / s
        if mode == MODE_MONO_OD:
            result.dnp_od_mm = result.npd_mm
        else:
            result.dnp_oi_mm = result.npd_mm

    # Pupil -> nasal rim and bridge (binocular only)
    if mode == MODE_BINOCULAR:
        band_px = NASAL_BAND_HALF_MM * s
        mid_od = mid_x_at(od[1])
        mid_oi = mid_x_at(oi[1])

        nasal_od = nasal_x_from_outline(placed_od, od[0], mid_od, od[1], band_px)
        nasal_oi = nasal_x_from_outline(placed_oi, oi[0], mid_oi, oi[1], band_px)

        if nasal_od is not None and nasal_oi is not None:
            pn_od = pupil_to_nasal_px(od, nasal_od, mid_od)
            pn_oi = pupil_to_nasal_px(oi, nasal_oi, mid_oi)
            if pn_od is not None:
                result.pn_od_mm = pn_od / s
            if pn_oi is not None:
                result.pn_oi_mm = pn_oi / s

            bridge = result.dnp_total_mm - result.pn_od_mm - result.pn_oi_mm + BRIDGE_OFFSET_MM
            if math.isfinite(bridge):
                result.bridge_mm = bridge
        elif placed_od is not None or placed_oi is not None:
            warnings.append("Nasal rim not found at pupil height; bridge not measured")

    result.height_od_mm = height_mm(od, rim_bottom_od, s)
    result.height_oi_mm = height_mm(oi, rim_bottom_oi, s)

    result.useful_diameter_od_mm = useful_diameter_mm(od, placed_od, s)
    result.useful_diameter_oi_mm = useful_diameter_mm(oi, placed_oi, s)

    return result


def compute_box_metrics(
    pupils: Tuple[Tuple[float, float], Tuple[float, float]],
    boxes: Tuple[Tuple[float, float, float, float], Tuple[float, float, float, float]],
    px_per_mm: float,
    hbox_mm: float,
    vbox_mm: float,
    midline_x: Optional[float] = None
) -> Optional[BoxMetrics]:
    """
    Measurements from two rectangular lens boxes.

    Pupils and boxes are ordered left to right in the image, so the first
    of each is the right eye (OD).

    Args:
        pupils: Two pupil points (px)
        boxes: Two boxes as (x, y, width, height) in px
        px_per_mm: Face scale
        hbox_mm: Traced HBOX (used for width / diagonal)
        vbox_mm: Traced VBOX
        midline_x: Midline column; defaults to the pupil mid-point

    Returns:
        BoxMetrics, or None for a non-positive scale or box size
    """
    if px_per_mm <= 0 or hbox_mm <= 0 or vbox_mm <= 0:
        return None

    p_l, p_r = sorted(pupils, key=lambda p: p[0])
    b_l, b_r = sorted(boxes, key=lambda b: b[0])

    mid_x = midline_x if midline_x is not None else (p_l[0] + p_r[0]) / 2.0

    dnp_total = abs(p_r[0] - p_l[0]) / px_per_mm
    dnp_od = abs(mid_x - p_l[0]) / px_per_mm
    dnp_oi = abs(p_r[0] - mid_x) / px_per_mm

    lx, ly, lw, lh = b_l
    rx, ry, rw, rh = b_r

    height_od = ((ly + lh) - p_l[1]) / px_per_mm
    height_oi = ((ry + rh) - p_r[1]) / px_per_mm

    gap_px = rx - (lx + lw)
    bridge = max(0.0, gap_px / px_per_mm)

    def corner_radius(p, box) -> float:
        x, y, w, h = box
        corners = [(x, y), (x + w, y), (x, y + h), (x + w, y + h)]
        return max_distance_to_points(p, corners) / px_per_mm

    return BoxMetrics(
        width_mm=hbox_mm,
        height_mm=vbox_mm,
        diagonal_mm=math.hypot(hbox_mm * 0.5, vbox_mm * 0.5),
        bridge_mm=bridge,
        dnp_od_mm=dnp_od,
        dnp_oi_mm=dnp_oi,
        dnp_total_mm=dnp_total,
        height_od_mm=height_od,
        height_oi_mm=height_oi,
        useful_diameter_od_mm=2.0 * corner_radius(p_l, b_l),
        useful_diameter_oi_mm=2.0 * corner_radius(p_r, b_r),
        px_per_mm=px_per_mm,
    )


def _min_distance_to_rect_edge(p: Tuple[float, float], box: Tuple[float, float, float, float]) -> float:
    left, top, right, bottom = box
    return min(abs(p[0] - left), abs(right - p[0]), abs(p[1] - top), abs(bottom - p[1]))


def compute_outline_metrics(
    pupil_od: Tuple[float, float],
    pupil_oi: Tuple[float, float],
    midline_x: float,
    px_per_mm: float,
    hbox_mm: float,
    vbox_mm: float,
    box_od: Tuple[float, float, float, float],
    box_oi: Tuple[float, float, float, float],
    outline_od=None,
    outline_oi=None
) -> OutlineMetrics:
    """
    Measurements against the traced box centred on each detected box.

    The bridge is the gap between the inner HBOX/2 edges, heights run to
    the VBOX/2 bottom edge and the useful diameter is twice the closest
    outline distance (falling back to the box edges).

    Args:
        box_od, box_oi: (left, top, right, bottom) in px

    Raises:
        ValueError: If px_per_mm is not positive
    """
    if px_per_mm <= 0:
        raise ValueError("Face px/mm must be > 0")

    to_mm = 1.0 / px_per_mm

    dnp_od = abs(pupil_od[0] - midline_x) * to_mm
    dnp_oi = abs(pupil_oi[0] - midline_x) * to_mm

    half_w_px = hbox_mm * px_per_mm * 0.5
    cx_od = (box_od[0] + box_od[2]) * 0.5
    cx_oi = (box_oi[0] + box_oi[2]) * 0.5
    bridge = max(0.0, ((cx_oi - half_w_px) - (cx_od + half_w_px)) * to_mm)

    half_h_px = vbox_mm * px_per_mm * 0.5
    bottom_od = (box_od[1] + box_od[3]) * 0.5 + half_h_px
    bottom_oi = (box_oi[1] + box_oi[3]) * 0.5 + half_h_px
    height_od = max(0.0, (bottom_od - pupil_od[1]) * to_mm)
    height_oi = max(0.0, (bottom_oi - pupil_oi[1]) * to_mm)

    def diameter(pupil, outline, box) -> float:
        if outline is not None and len(as_points(outline)) >= 2:
            d_px = min_distance_to_outline(pupil, outline)
        else:
            d_px = _min_distance_to_rect_edge(pupil, box)
        return 2.0 * d_px * to_mm

    return OutlineMetrics(
        dnp_od_mm=dnp_od,
        dnp_oi_mm=dnp_oi,
        bridge_mm=bridge,
        height_od_mm=height_od,
        height_oi_mm=height_oi,
        useful_diameter_od_mm=diameter(pupil_od, outline_od, box_od),
        useful_diameter_oi_mm=diameter(pupil_oi, outline_oi, box_oi),
    )


def scale_from_rim_widths(
    width_od_px: Optional[float],
    width_oi_px: Optional[float],
    hbox_inner_mm: float
) -> ScaleSeed:
    """
    Seed the face scale from measured inner rim widths.

    Either eye may be missing; with both, their scales are averaged.

    Args:
        width_od_px: Right rim inner width (px)
        width_oi_px: Left rim inner width (px)
        hbox_inner_mm: Inner HBOX of the traced shape (mm)

    Raises:
        ValueError: If hbox_inner_mm is not positive
    """
    if hbox_inner_mm <= 0:
        raise ValueError("Inner HBOX must be > 0")

    def px_from(width: Optional[float]) -> Optional[float]:
        if not is_finite_number(width) or width <= 1.0:
            return None
        s = width / hbox_inner_mm
        return s if math.isfinite(s) and s > 1e-6 else None

    od = px_from(width_od_px)
    oi = px_from(width_oi_px)

    if od is not None and oi is not None:
        return ScaleSeed((od + oi) * 0.5, od, oi, "rimBOTH_W")
    if od is not None:
        return ScaleSeed(od, od, None, "rimOD_W")
    if oi is not None:
        return ScaleSeed(oi, None, oi, "rimOI_W")
    return ScaleSeed(NAN, None, None, "NONE")

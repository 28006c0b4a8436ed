"""
Box Metrics Module - HBOX / VBOX / Diagonal Extraction

Derives the boxing-system measurements of a lens shape from its radii or
contour:

- HBOX: horizontal width of the bounding box
- VBOX: vertical height of the bounding box
- FED: effective diameter (2 x largest radius)
- CIRC: perimeter of the shape
"""

import math
from typing import Optional
from dataclasses import dataclass

import numpy as np

from .contour import ContourMm, radii_to_contour, contour_from_trace_px
from .utils import closed_perimeter


@dataclass
class LensGeometry:
    """Boxing measurements of a lens shape (all mm)."""
    hbox_mm: float
    vbox_mm: float
    fed_mm: float
    circ_mm: float = 0.0

    @property
    def diagonal_mm(self) -> float:
        """Major diagonal hypot(HBOX/2, VBOX/2)."""
        return math.hypot(self.hbox_mm * 0.5, self.vbox_mm * 0.5)

    @property
    def eyesize_mm(self) -> float:
        """Eye size written to the FIL (same as FED)."""
        return self.fed_mm

    @property
    def aspect(self) -> float:
        """HBOX / VBOX ratio (0 when VBOX is 0)."""
        if self.vbox_mm <= 0:
            return 0.0
        return self.hbox_mm / self.vbox_mm

    def to_dict(self) -> dict:
        return {
            "hbox_mm": self.hbox_mm,
            "vbox_mm": self.vbox_mm,
            "fed_mm": self.fed_mm,
            "circ_mm": self.circ_mm,
            "diagonal_mm": self.diagonal_mm,
            "eyesize_mm": self.eyesize_mm,
        }


def geometry_from_contour(contour: ContourMm) -> LensGeometry:
    """
    Box measurements of a contour centred on the lens centre.

    FED uses the distance from the origin, so it depends on where the
    contour is centred; HBOX/VBOX do not.
    """
    pts = contour.points
    if len(pts) == 0:
        return LensGeometry(0.0, 0.0, 0.0, 0.0)

    r_max = float(np.hypot(pts[:, 0], pts[:, 1]).max())
    return LensGeometry(
        hbox_mm=contour.hbox,
        vbox_mm=contour.vbox,
        fed_mm=2.0 * r_max,
        circ_mm=closed_perimeter(pts),
    )


def geometry_from_radii(radii_mm) -> LensGeometry:
    """Box measurements of a tracer radius array (mm)."""
    r = np.asarray(radii_mm, dtype=np.float64)
    contour = radii_to_contour(r)
    geo = geometry_from_contour(contour)
    # FED straight from the radii avoids float drift from cos/sin
    geo.fed_mm = 2.0 * float(r.max())
    return geo


def trace_info(outline_px, px_per_mm: float) -> Optional[LensGeometry]:
    """
    HBOX / VBOX / EYESIZ of a traced pixel outline.

    Returns None when the outline is empty or the scale is invalid.
    """
    contour = contour_from_trace_px(outline_px, px_per_mm)
    if contour is None:
        return None
    return geometry_from_contour(contour)

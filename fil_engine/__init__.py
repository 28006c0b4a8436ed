"""
FIL Radial-Contour Geometry Engine

Lens-tracer radius arrays, contour reconstruction, boxing measurements
and px/mm placement of traced frames on face photos.
"""

from .core import FrameFitting, FittingResult, PrecalTrace
from .fil_format import FilRecord, parse_fil_text, build_fil_text
from .mapping import Midline
from .metrics import LensGeometry, geometry_from_radii

__version__ = "0.1.0"
__all__ = [
    "FrameFitting",
    "FittingResult",
    "PrecalTrace",
    "FilRecord",
    "parse_fil_text",
    "build_fil_text",
    "Midline",
    "LensGeometry",
    "geometry_from_radii",
]

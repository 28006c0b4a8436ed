"""
Core Frame Fitting Engine

This module provides the FrameFitting class that ties the radius codec,
contour reconstruction, box metrics, eye placement and pupil measurements
together for one frame trace and one face photo.
"""

import math
from typing import Optional, List, Tuple, Union
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from .fil_format import FilRecord, parse_fil_text, parse_fil_file, build_fil_text
from .contour import (
    ContourMm,
    radii_to_contour,
    resample_by_arc,
    smooth_closed_polyline,
    radii_from_polygon,
)
from .metrics import LensGeometry, geometry_from_radii
from .mapping import Midline, PlacedPair, FaceBoxCheck, place_pair, face_box_check, px_to_mm
from .measurement import FaceMetrics, compute_face_metrics, sanitize_px_per_mm
from .radii import (
    RadiusBias,
    rotate_radii,
    fill_missing_circular,
    regularize_radii,
    radii_are_complete,
    to_hundredths,
)
from .utils import (
    N_SAMPLES,
    RESAMPLE_ARC,
    SMOOTH_WIN_POLY,
    DEFAULT_DBL_MM,
    DEFAULT_MANUFACTURER,
    ensure_closed,
    fmt,
    is_finite_number,
    is_finite_point,
)


@dataclass
class PrecalTrace:
    """
    Lens trace captured against the calibration sheet.

    Either radii_mm (N samples from the tracer) or outline_px (pixel
    outline around centre_px) must be usable.
    """
    px_per_mm: float
    centre_px: Tuple[float, float]
    radii_mm: Optional[np.ndarray] = None
    outline_px: Optional[np.ndarray] = None
    valid: bool = True
    reason_if_invalid: Optional[str] = None
    camera_id: str = ""
    zoom: float = 1.0
    coverage: float = 0.0
    sharpness: float = 0.0
    confidence: float = 0.0


@dataclass
class FittingResult:
    """
    Complete result of fitting a traced frame to a face photo.

    Contains intermediate values, warnings and the final measurements.
    """

    # Trace
    job: Optional[str] = None
    rotation_deg: float = 0.0
    geometry: Optional[LensGeometry] = None
    contour_od: Optional[ContourMm] = None

    # Placement
    midline: Optional[Midline] = None
    placement: Optional[PlacedPair] = None
    box_check: Optional[FaceBoxCheck] = None
    px_per_mm: Optional[float] = None

    # Measurements
    metrics: Optional[FaceMetrics] = None

    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        """Check if the result holds measurements."""
        return self.metrics is not None and self.geometry is not None and not self.errors

    def to_dict(self) -> dict:
        """Convert result to dictionary for serialization."""
        return {
            "job": self.job,
            "rotation_deg": self.rotation_deg,
            "geometry": self.geometry.to_dict() if self.geometry else None,
            "midline": self.midline.to_dict() if self.midline else None,
            "placement": self.placement.to_dict() if self.placement else None,
            "outline_od_px": self.placement.outline_od_px.tolist() if self.placement else None,
            "outline_oi_px": self.placement.outline_oi_px.tolist() if self.placement else None,
            "box_check": self.box_check.to_dict() if self.box_check else None,
            "px_per_mm": self.px_per_mm,
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "is_valid": self.is_valid,
            "warnings": self.warnings,
            "errors": self.errors,
        }

    def __str__(self) -> str:
        """Human-readable string representation."""
        if not self.is_valid:
            return f"FittingResult(invalid, errors={self.errors})"

        m = self.metrics
        return (
            f"FittingResult(HBOX={fmt(self.geometry.hbox_mm)}mm, "
            f"VBOX={fmt(self.geometry.vbox_mm)}mm, "
            f"DNP={fmt(m.dnp_od_mm, 1)}/{fmt(m.dnp_oi_mm, 1)}mm, "
            f"bridge={fmt(m.bridge_mm, 1)}mm, mode={m.mode})"
        )


class FrameFitting:
    """
    Main engine for fitting a traced frame shape to a face photo.

    Usage:
        engine = FrameFitting()
        fil = engine.load_fil("job.FIL")
        result = engine.fit(fil, pupil_od=(410, 520), pupil_oi=(790, 518),
                            midline=Midline.vertical(600), px_per_mm=9.5)
        print(result)
    """

    def __init__(
        self,
        n_samples: int = N_SAMPLES,
        radius_bias: Optional[RadiusBias] = None,
        default_dbl_mm: float = DEFAULT_DBL_MM,
        manufacturer: str = DEFAULT_MANUFACTURER,
        verbose: bool = False
    ):
        """
        Initialize the fitting engine.

        Args:
            n_samples: Radii per trace
            radius_bias: Optional bias applied when exporting traced shapes
            default_dbl_mm: Distance between lenses when none is given
            manufacturer: FMFR value of exported FILs
            verbose: Print diagnostics
        """
        self.n_samples = n_samples
        self.radius_bias = radius_bias
        self.default_dbl_mm = default_dbl_mm
        self.manufacturer = manufacturer
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(f"[FrameFitting] {message}")

    def parse_fil(self, text: str) -> FilRecord:
        """Parse FIL text."""
        return parse_fil_text(text, self.n_samples)

    def load_fil(self, path: Union[str, Path]) -> FilRecord:
        """Load a FIL file."""
        return parse_fil_file(path, self.n_samples)

    def shape(self, fil: FilRecord, rotation_deg: float = 0.0) -> Tuple[ContourMm, LensGeometry]:
        """
        Rotated right-eye contour and its box measurements.

        HBOX/VBOX written in the FIL take precedence over the computed box
        when no rotation is applied.
        """
        radii = rotate_radii(fil.radii_mm, rotation_deg) if rotation_deg else fil.radii_mm
        contour = radii_to_contour(radii)
        geometry = geometry_from_radii(radii)

        if not rotation_deg:
            if fil.hbox_mm and fil.hbox_mm > 0:
                geometry.hbox_mm = fil.hbox_mm
            if fil.vbox_mm and fil.vbox_mm > 0:
                geometry.vbox_mm = fil.vbox_mm

        self._log(
            f"Shape n={len(radii)} rot={rotation_deg:.1f} "
            f"HBOX={fmt(geometry.hbox_mm)} VBOX={fmt(geometry.vbox_mm)} FED={fmt(geometry.fed_mm)}"
        )
        return contour, geometry

    def fit(
        self,
        fil: FilRecord,
        pupil_od: Optional[Tuple[float, float]],
        pupil_oi: Optional[Tuple[float, float]],
        midline: Midline,
        px_per_mm: Optional[float],
        rotation_deg: float = 0.0,
        dbl_mm: Optional[float] = None,
        centre_y_px: Optional[float] = None,
        rim_bottom_od: Optional[float] = None,
        rim_bottom_oi: Optional[float] = None,
        image_width: Optional[int] = None
    ) -> FittingResult:
        """
        Fit a traced shape to a face and measure.

        Args:
            fil: Parsed FIL
            pupil_od: Right-eye pupil (px), image left
            pupil_oi: Left-eye pupil (px), image right
            midline: Facial midline
            px_per_mm: Face scale
            rotation_deg: Shape rotation applied before placement
            dbl_mm: Distance between lenses (engine default when None)
            centre_y_px: Row of the box centres (mean pupil row when None)
            rim_bottom_od: Bottom rim row under the right pupil (px)
            rim_bottom_oi: Bottom rim row under the left pupil (px)
            image_width: Clamp midline lookups to the image

        Returns:
            FittingResult with measurement details
        """
        result = FittingResult(job=fil.job, rotation_deg=rotation_deg, midline=midline)
        result.warnings.extend(fil.warnings)

        # Step 1: Shape
        try:
            contour, geometry = self.shape(fil, rotation_deg)
        except ValueError as e:
            result.errors.append(str(e))
            return result
        result.contour_od = contour
        result.geometry = geometry

        # Step 2: Scale
        scale = sanitize_px_per_mm(px_per_mm, result.warnings)
        result.px_per_mm = scale

        # Step 3: Placement about the midline
        for label, pupil in (("OD", pupil_od), ("OI", pupil_oi)):
            if pupil is not None and not is_finite_point(pupil):
                result.warnings.append(f"Pupil {label} is not finite; ignored")
        rows = [p[1] for p in (pupil_od, pupil_oi) if is_finite_point(p)]
        if centre_y_px is not None and not is_finite_number(centre_y_px):
            result.warnings.append(f"Invalid centre row ({centre_y_px}); using pupil rows")
            centre_y_px = None
        if centre_y_px is None:
            if not rows:
                result.errors.append("No pupil and no centre row to place the lenses")
                return result
            centre_y_px = float(np.mean(rows))

        dbl = self.default_dbl_mm if dbl_mm is None else dbl_mm
        result.placement = place_pair(contour, midline, centre_y_px, scale, dbl)
        self._log(
            f"Placed OD at ({result.placement.centre_od_px[0]:.1f}, {centre_y_px:.1f}) "
            f"OI at ({result.placement.centre_oi_px[0]:.1f}, {centre_y_px:.1f}) DBL={dbl:.1f}"
        )

        # Step 4: Box QA against the traced box
        if geometry.hbox_mm > 0 and geometry.vbox_mm > 0:
            result.box_check = face_box_check(
                geometry.hbox_mm,
                geometry.vbox_mm,
                result.placement.box_od_px,
                result.placement.box_oi_px,
                scale,
            )
            if max(result.box_check.diff_hbox_pct, result.box_check.diff_vbox_pct) > 5.0:
                result.warnings.append(
                    f"Face box differs from trace (HBOX {result.box_check.diff_hbox_pct:.1f}%, "
                    f"VBOX {result.box_check.diff_vbox_pct:.1f}%)"
                )

        # Step 5: Pupil measurements
        try:
            result.metrics = compute_face_metrics(
                pupil_od,
                pupil_oi,
                midline,
                scale,
                placed_od=result.placement.outline_od_px,
                placed_oi=result.placement.outline_oi_px,
                rim_bottom_od=rim_bottom_od,
                rim_bottom_oi=rim_bottom_oi,
                image_width=image_width,
            )
        except ValueError as e:
            result.errors.append(str(e))
            return result

        result.warnings.extend(result.metrics.warnings)
        self._log(str(result))
        return result

    def radii_from_trace(self, trace: PrecalTrace) -> np.ndarray:
        """
        Integer radii (hundredths) for a precal trace, before regularization.

        The tracer's own radii are used when complete; otherwise the pixel
        outline is moved to mm about the trace centre, resampled, smoothed
        and ray-cast.
        """
        if trace.radii_mm is not None and radii_are_complete(trace.radii_mm, self.n_samples):
            self._log("Using traced radii")
            return to_hundredths(trace.radii_mm)

        if trace.outline_px is None or len(trace.outline_px) == 0:
            raise ValueError("Empty trace outline")

        poly_mm = px_to_mm(trace.outline_px, trace.centre_px, trace.px_per_mm)
        closed = ensure_closed(poly_mm)
        resampled = resample_by_arc(closed, RESAMPLE_ARC)
        smooth = smooth_closed_polyline(resampled, SMOOTH_WIN_POLY)

        radii = fill_missing_circular(radii_from_polygon(smooth, self.n_samples))
        if not np.all(np.isfinite(radii)):
            raise ValueError("Trace outline does not surround its centre")

        self._log(f"Ray-cast {self.n_samples} radii from {len(trace.outline_px)} outline points")
        return to_hundredths(radii)

    def build_fil_from_trace(self, job_id: str, trace: PrecalTrace) -> str:
        """
        Export a precal trace as FIL text.

        Raises:
            ValueError: For invalid traces, empty outlines or bad scales
        """
        if not trace.valid:
            raise ValueError(f"Invalid trace: {trace.reason_if_invalid}")
        if not (trace.px_per_mm and math.isfinite(trace.px_per_mm) and trace.px_per_mm > 0):
            raise ValueError(f"Invalid px/mm: {trace.px_per_mm}")

        radii = self.radii_from_trace(trace)
        radii = regularize_radii(radii, self.radius_bias)
        geometry = geometry_from_radii(radii / 100.0)

        self._log(
            f"Export job={job_id} HBOX={fmt(geometry.hbox_mm)} VBOX={fmt(geometry.vbox_mm)} "
            f"FED={fmt(geometry.fed_mm)} CIRC={fmt(geometry.circ_mm)}"
        )
        return build_fil_text(job_id, radii, geometry, self.manufacturer)

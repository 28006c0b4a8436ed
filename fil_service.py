"""
FIL Measurement Service - Backend logic for trace parsing, fitting and export.
Configuration comes from environment variables (.env supported).
"""

import os
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

import numpy as np
from dotenv import load_dotenv

from fil_engine.core import FrameFitting, PrecalTrace
from fil_engine.fil_format import FilRecord, save_fil, build_trace_text, save_trace_text
from fil_engine.mapping import Midline
from fil_engine.radii import RadiusBias, rotate_radii
from fil_engine.metrics import geometry_from_radii
from fil_engine.utils import N_SAMPLES, DEFAULT_MANUFACTURER

load_dotenv()


class ServiceConfig:
    """Service settings read from the environment."""

    def __init__(self):
        self.export_dir = os.getenv("FIL_EXPORT_DIR", "exports")
        self.radius_bias_path = os.getenv("FIL_RADIUS_BIAS_PATH") or None
        self.radius_bias_shift = int(os.getenv("FIL_RADIUS_BIAS_SHIFT", "0"))
        self.n_samples = int(os.getenv("FIL_SAMPLES", str(N_SAMPLES)))
        self.manufacturer = os.getenv("FIL_MANUFACTURER", DEFAULT_MANUFACTURER)
        self.verbose = os.getenv("FIL_VERBOSE", "0").lower() in ("1", "true", "yes")


def _point(values: Optional[List[float]]) -> Optional[Tuple[float, float]]:
    if values is None:
        return None
    if len(values) != 2:
        raise ValueError(f"Expected [x, y], got {values}")
    return (float(values[0]), float(values[1]))


class FilService:
    """Frame trace service around the FrameFitting engine."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        self.config = config or ServiceConfig()
        print("Initializing FIL Fitting Engine...")

        bias = None
        if self.config.radius_bias_path:
            bias = RadiusBias.from_file(
                self.config.radius_bias_path,
                shift_steps=self.config.radius_bias_shift,
                n_samples=self.config.n_samples,
            )
            print(f"[FilService] Radius bias loaded from {self.config.radius_bias_path}")

        self.engine = FrameFitting(
            n_samples=self.config.n_samples,
            radius_bias=bias,
            manufacturer=self.config.manufacturer,
            verbose=self.config.verbose,
        )
        os.makedirs(self.config.export_dir, exist_ok=True)

    def parse_fil(self, text: str) -> Dict[str, Any]:
        """Parse FIL text and return its fields and computed geometry."""
        fil = self.engine.parse_fil(text)
        geometry = geometry_from_radii(fil.radii_mm)
        return {
            "fil": fil.to_dict(),
            "geometry": geometry.to_dict(),
        }

    def rotate(self, text: str, angle_deg: float) -> Dict[str, Any]:
        """Rotate the radii of a FIL and return the new geometry."""
        fil = self.engine.parse_fil(text)
        radii = rotate_radii(fil.radii_mm, angle_deg)
        return {
            "angle_deg": angle_deg,
            "radii_mm": [float(v) for v in radii],
            "geometry": geometry_from_radii(radii).to_dict(),
        }

    def measure(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Fit a FIL to a face and measure.

        Expected keys: fil_text, px_per_mm, midline ({a, b} or midline_x),
        pupil_od, pupil_oi and optional rotation_deg, dbl_mm, centre_y_px,
        rim_bottom_od, rim_bottom_oi, image_width.
        """
        fil: FilRecord = self.engine.parse_fil(request["fil_text"])

        midline_x = request.get("midline_x")
        midline_pts = request.get("midline")
        if midline_pts is not None:
            midline = Midline(a=_point(midline_pts[0]), b=_point(midline_pts[1]))
        elif midline_x is not None:
            midline = Midline.vertical(float(midline_x))
        else:
            raise ValueError("A midline (two points) or midline_x is required")

        result = self.engine.fit(
            fil,
            pupil_od=_point(request.get("pupil_od")),
            pupil_oi=_point(request.get("pupil_oi")),
            midline=midline,
            px_per_mm=request.get("px_per_mm"),
            rotation_deg=float(request.get("rotation_deg") or 0.0),
            dbl_mm=request.get("dbl_mm"),
            centre_y_px=request.get("centre_y_px"),
            rim_bottom_od=request.get("rim_bottom_od"),
            rim_bottom_oi=request.get("rim_bottom_oi"),
            image_width=request.get("image_width"),
        )

        response = result.to_dict()
        response["success"] = result.is_valid
        return response

    def export_fil(
        self,
        job_id: str,
        px_per_mm: float,
        centre_px: List[float],
        radii_mm: Optional[List[float]] = None,
        outline_px: Optional[List[List[float]]] = None
    ) -> Dict[str, Any]:
        """Build a FIL from a trace and save it in the export directory."""
        trace = PrecalTrace(
            px_per_mm=px_per_mm,
            centre_px=_point(centre_px),
            radii_mm=np.asarray(radii_mm, dtype=np.float64) if radii_mm is not None else None,
            outline_px=np.asarray(outline_px, dtype=np.float64) if outline_px is not None else None,
        )
        text = self.engine.build_fil_from_trace(job_id, trace)

        base_name = self._export_base_name(job_id)
        path = save_fil(self.config.export_dir, base_name, text)

        # Trace record next to the FIL, radii as exported
        exported = self.engine.parse_fil(text)
        centre_mm = (trace.centre_px[0] / px_per_mm, trace.centre_px[1] / px_per_mm)
        trace_path = save_trace_text(
            self.config.export_dir,
            f"{base_name}_trace",
            build_trace_text(px_per_mm, exported.radii_mm, centre_mm, notes=f"JOB={job_id}"),
        )
        print(f"[FilService] Exported {path} and {trace_path.name}")

        return {
            "job": job_id,
            "file": path.name,
            "trace_file": trace_path.name,
            "geometry": geometry_from_radii(exported.radii_mm).to_dict(),
            "fil_text": text,
        }

    def _export_base_name(self, job_id: str) -> str:
        """Unique export name: <job>_<timestamp with microseconds>[_<k>]."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        base_name = f"{job_id}_{timestamp}"
        candidate, k = base_name, 1
        while os.path.exists(os.path.join(self.config.export_dir, f"{candidate}.FIL")):
            candidate = f"{base_name}_{k}"
            k += 1
        return candidate

    def list_exports(self) -> List[str]:
        """Names of exported FIL files."""
        return sorted(
            name for name in os.listdir(self.config.export_dir)
            if name.upper().endswith(".FIL")
        )


_service: Optional[FilService] = None


def get_fil_service() -> FilService:
    """Get or create the service singleton."""
    global _service
    if _service is None:
        _service = FilService()
    return _service

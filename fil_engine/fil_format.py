"""
FIL Format Module - Tracer File Codec

Reads and writes the plain-text FIL format exchanged with lens tracers
and edgers:

    REQ=FIL
    JOB="1234"
    TRCFMT=1;800;E;R;D
    R=2512;2513;2515;...
    HBOX=52.10;?
    VBOX=38.40;?

Radii travel as hundredths of mm in R= records that may span many lines.
"""

import os
import re
from pathlib import Path
from typing import Optional, List, Dict, Tuple, Union
from dataclasses import dataclass, field

import numpy as np

from .contour import polar_angles
from .metrics import LensGeometry, geometry_from_radii
from .radii import to_millimetres, to_hundredths
from .utils import N_SAMPLES, HUNDREDTHS_THRESHOLD, DEFAULT_MANUFACTURER


FIL_ENCODING = "iso-8859-1"
R_VALUES_PER_LINE = 8
TRACE_VALUES_PER_LINE = 14

_R_LINE = re.compile(r"(?m)^\s*R\s*=\s*(.+)$")
_KEY_VALUE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9_]*)\s*=\s*(.*?)\s*$")
_TOKEN_SPLIT = re.compile(r"[;\s]+")


@dataclass
class FilRecord:
    """Parsed FIL contents."""
    radii_mm: np.ndarray
    n: int = N_SAMPLES
    hbox_mm: Optional[float] = None
    vbox_mm: Optional[float] = None
    fed_mm: Optional[float] = None
    circ_mm: Optional[float] = None
    eyesize_mm: Optional[float] = None
    job: Optional[str] = None
    fields: Dict[str, str] = field(default_factory=dict)
    samples_read: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        """True when every radius came from the file (no padding)."""
        return self.samples_read >= self.n

    def to_dict(self) -> dict:
        return {
            "n": self.n,
            "job": self.job,
            "hbox_mm": self.hbox_mm,
            "vbox_mm": self.vbox_mm,
            "fed_mm": self.fed_mm,
            "circ_mm": self.circ_mm,
            "eyesize_mm": self.eyesize_mm,
            "samples_read": self.samples_read,
            "radii_mm": [float(v) for v in self.radii_mm],
            "warnings": self.warnings,
        }


def _parse_mm_field(text: str, name: str) -> Optional[float]:
    # First match wins; accepts "HBOX=55.10", "HBOX = 5510", "HBOX=55.10;?"
    match = re.search(rf"(?i)\b{name}\s*=\s*([-+]?\d+(?:\.\d+)?)", text)
    if match is None:
        return None
    raw = float(match.group(1))
    return raw / 100.0 if raw >= HUNDREDTHS_THRESHOLD else raw


def _parse_fields(text: str) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        match = _KEY_VALUE.match(line)
        if match is None:
            continue
        key = match.group(1).upper()
        if key == "R" or key in fields:
            continue
        fields[key] = match.group(2)
    return fields


def parse_fil_text(text: str, n: int = N_SAMPLES) -> FilRecord:
    """
    Parse FIL text into radii (mm) and box fields.

    R= payloads accept ';', ',', space and tab separators. Values >= 200
    are hundredths of mm, smaller values are already mm. Reading stops
    after n values; a short file is padded with its last radius.

    Args:
        text: FIL contents
        n: Expected number of samples

    Returns:
        FilRecord

    Raises:
        ValueError: If n is not positive or the text has no radii
    """
    if n <= 0:
        raise ValueError(f"Sample count must be positive, got {n}")

    values: List[float] = []
    for match in _R_LINE.finditer(text):
        payload = match.group(1).replace(",", ";")
        for token in _TOKEN_SPLIT.split(payload):
            if not token:
                continue
            try:
                values.append(float(token))
            except ValueError:
                continue
            if len(values) >= n:
                break
        if len(values) >= n:
            break

    if not values:
        raise ValueError("No R= radii found in FIL text")

    warnings = []
    read = len(values)
    radii = to_millimetres(values)
    if read < n:
        radii = np.concatenate([radii, np.full(n - read, radii[-1])])
        warnings.append(
            f"FIL has {read} radii, expected {n}; padded with the last value"
        )

    fields = _parse_fields(text)
    job = fields.get("JOB")
    if job is not None:
        job = job.strip().strip('"')

    return FilRecord(
        radii_mm=radii,
        n=n,
        hbox_mm=_parse_mm_field(text, "HBOX"),
        vbox_mm=_parse_mm_field(text, "VBOX"),
        fed_mm=_parse_mm_field(text, "FED"),
        circ_mm=_parse_mm_field(text, "CIRC"),
        eyesize_mm=_parse_mm_field(text, "EYESIZ"),
        job=job,
        fields=fields,
        samples_read=read,
        warnings=warnings,
    )


def parse_fil_file(path: Union[str, Path], n: int = N_SAMPLES) -> FilRecord:
    """Read and parse a FIL file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"FIL file not found: {path}")
    text = path.read_text(encoding=FIL_ENCODING)
    return parse_fil_text(text, n)


def _r_lines(values, per_line: int) -> List[str]:
    values = [int(v) for v in values]
    lines = []
    for start in range(0, len(values), per_line):
        chunk = values[start:start + per_line]
        lines.append("R=" + "".join(f"{v};" for v in chunk))
    return lines


def build_fil_text(
    job_id: str,
    radii_hundredths,
    geometry: Optional[LensGeometry] = None,
    manufacturer: str = DEFAULT_MANUFACTURER
) -> str:
    """
    Write a FIL document for a traced shape.

    Args:
        job_id: Job / frame identifier
        radii_hundredths: N integer radii (hundredths of mm)
        geometry: Box measurements; computed from the radii when omitted
        manufacturer: FMFR header value

    Returns:
        FIL text ('\\n' line endings)
    """
    r = np.asarray(radii_hundredths, dtype=np.int64)
    if len(r) == 0:
        raise ValueError("Cannot write a FIL without radii")
    if geometry is None:
        geometry = geometry_from_radii(r / 100.0)

    lines = [
        "REQ=FIL",
        f'JOB="{job_id}"',
        "STATUS=0",
        f"TRCFMT=1;{len(r)};E;R;D",
    ]
    lines.extend(_r_lines(r, R_VALUES_PER_LINE))
    lines.extend([
        "",
        f"CIRC={geometry.circ_mm:.2f};?",
        f"FED={geometry.fed_mm:.2f};?",
        f"HBOX={geometry.hbox_mm:.2f};?",
        f"VBOX={geometry.vbox_mm:.2f};?",
        "",
        f"FMFR={manufacturer}",
        f"FRAM={job_id}",
        f"EYESIZ={geometry.eyesize_mm:.2f}",
        "",
    ])
    return "\n".join(lines) + "\n"


def _box_from_radii(radii_mm: np.ndarray) -> Tuple[float, float]:
    # Any sample count works here; contour reconstruction needs at least 10
    if len(radii_mm) == 0:
        return 0.0, 0.0
    theta = polar_angles(len(radii_mm))
    x = radii_mm * np.cos(theta)
    y = radii_mm * np.sin(theta)
    return float(x.max() - x.min()), float(y.max() - y.min())


def build_trace_text(
    px_per_mm: float,
    radii_mm,
    center_mm: Tuple[float, float],
    hbox_mm: Optional[float] = None,
    notes: Optional[str] = None
) -> str:
    """
    Write the lightweight trace record saved next to the photos.

    HBOX/VBOX come from the radii (translation does not change them);
    EYESIZ is the diagonal of that box. Radii are written as hundredths,
    14 per R= line.
    """
    r = np.asarray(radii_mm, dtype=np.float64)

    hbox_from_radii, vbox = _box_from_radii(r)
    eye = float(np.hypot(hbox_from_radii, vbox)) if hbox_from_radii > 0 and vbox > 0 else 0.0
    hbox = hbox_mm if hbox_mm is not None else hbox_from_radii

    lines = [
        "TRAZADO=1",
        f"PXPERMM={px_per_mm:.4f}",
        f"CENTERMM={center_mm[0]:.2f};{center_mm[1]:.2f}",
    ]
    if hbox > 0:
        lines.append(f"HBOX={hbox:.2f}")
    if vbox > 0:
        lines.append(f"VBOX={vbox:.2f}")
    if eye > 0:
        lines.append(f"EYESIZ={eye:.2f}")
    if notes and notes.strip():
        lines.append(f"NOTES={notes}")
    if len(r):
        lines.extend(_r_lines(to_hundredths(r), TRACE_VALUES_PER_LINE))

    return "\n".join(lines) + "\n"


def save_fil(directory: Union[str, Path], base_name: str, text: str) -> Path:
    """Save FIL text as <base_name>.FIL (ISO-8859-1)."""
    os.makedirs(directory, exist_ok=True)
    path = Path(directory) / f"{base_name}.FIL"
    path.write_bytes(text.encode(FIL_ENCODING, errors="replace"))
    return path


def save_trace_text(directory: Union[str, Path], base_name: str, text: str) -> Path:
    """Save a trace record without extension (UTF-8)."""
    os.makedirs(directory, exist_ok=True)
    path = Path(directory) / base_name
    path.write_text(text, encoding="utf-8")
    return path

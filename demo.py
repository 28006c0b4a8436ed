#!/usr/bin/env python3
"""
FIL Geometry Demo Script

Inspect a tracer FIL, rotate it, fit it to a face with known pupil
positions, and export a normalized FIL.

Usage:
    python demo.py <fil_path> [options]

Examples:
    python demo.py job.FIL
    python demo.py job.FIL --rotate 4
    python demo.py job.FIL --px-per-mm 9.5 --midline-x 600 \\
        --pupil-od 410 520 --pupil-oi 790 518
    python demo.py job.FIL --export exports --job 1234
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import Optional

import numpy as np

from fil_engine.core import FrameFitting, FittingResult, PrecalTrace
from fil_engine.fil_format import FilRecord, save_fil
from fil_engine.mapping import Midline
from fil_engine.metrics import geometry_from_radii
from fil_engine.radii import rotate_radii
from fil_engine.contour import cardinal_indices
from fil_engine.utils import fmt


def print_header(title: str) -> None:
    """Print formatted header."""
    line = "=" * 70
    print(f"\n{line}")
    print(f"  {title}")
    print(line)


def print_section(title: str) -> None:
    """Print formatted section header."""
    print(f"\n{'-' * 40}")
    print(f"  {title}")
    print(f"{'-' * 40}")


def show_fil(fil: FilRecord, rotation_deg: float = 0.0) -> None:
    """Print trace fields and geometry."""
    print_header("FIL GEOMETRY")

    print(f"  Job: {fil.job or '-'}")
    print(f"  Samples: {fil.samples_read}/{fil.n}")
    print(f"  HBOX (file): {fmt(fil.hbox_mm)} mm")
    print(f"  VBOX (file): {fmt(fil.vbox_mm)} mm")

    radii = rotate_radii(fil.radii_mm, rotation_deg) if rotation_deg else fil.radii_mm
    geo = geometry_from_radii(radii)

    print_section(f"COMPUTED (rotation {rotation_deg:.1f} deg)")
    print(f"    HBOX: {fmt(geo.hbox_mm)} mm")
    print(f"    VBOX: {fmt(geo.vbox_mm)} mm")
    print(f"    Diagonal: {fmt(geo.diagonal_mm)} mm")
    print(f"    FED: {fmt(geo.fed_mm)} mm")
    print(f"    CIRC: {fmt(geo.circ_mm)} mm")

    print("    Cardinal radii:")
    for lbl, idx in zip(["+X", "+Y", "-X", "-Y"], cardinal_indices(len(radii))):
        print(f"      {lbl} [{idx}]: {radii[idx]:.2f} mm")

    for w in fil.warnings:
        print(f"      ⚠️ {w}")


def run_fit(engine: FrameFitting, fil: FilRecord, args: argparse.Namespace) -> Optional[FittingResult]:
    """Fit the FIL to the face described on the command line."""
    print_header("FACE FITTING")

    if args.midline is not None:
        x1, y1, x2, y2 = args.midline
        midline = Midline(a=(x1, y1), b=(x2, y2))
    elif args.midline_x is not None:
        midline = Midline.vertical(args.midline_x)
    else:
        print("Error: --midline or --midline-x is required for fitting")
        return None

    result = engine.fit(
        fil,
        pupil_od=tuple(args.pupil_od) if args.pupil_od else None,
        pupil_oi=tuple(args.pupil_oi) if args.pupil_oi else None,
        midline=midline,
        px_per_mm=args.px_per_mm,
        rotation_deg=args.rotate,
        dbl_mm=args.dbl,
    )

    print_section("RESULT")

    if result.is_valid:
        m = result.metrics
        print(f"  ✓ Mode: {m.mode}")
        print(f"    Scale: {result.px_per_mm:.4f} px/mm")
        print(f"    DNP OD: {fmt(m.dnp_od_mm)} mm")
        print(f"    DNP OI: {fmt(m.dnp_oi_mm)} mm")
        print(f"    PD total: {fmt(m.dnp_total_mm)} mm")
        if m.mode != "BINOC":
            print(f"    NPD: {fmt(m.npd_mm)} mm")
        print(f"    Bridge: {fmt(m.bridge_mm)} mm")
        print(f"    Useful diameter OD/OI: {fmt(m.useful_diameter_od_mm, 1)} / "
              f"{fmt(m.useful_diameter_oi_mm, 1)} mm")

        if result.placement:
            cod, coi = result.placement.centre_od_px, result.placement.centre_oi_px
            print(f"    Lens centres: OD=({cod[0]:.1f}, {cod[1]:.1f}) OI=({coi[0]:.1f}, {coi[1]:.1f})")

        if result.warnings:
            print("    Warnings:")
            for w in result.warnings:
                print(f"      ⚠️ {w}")
    else:
        print("  ✗ Fitting FAILED")
        for e in result.errors:
            print(f"    Error: {e}")
        for w in result.warnings:
            print(f"    Warning: {w}")

    return result


def run_export(engine: FrameFitting, fil: FilRecord, args: argparse.Namespace) -> None:
    """Regularize the radii and write a normalized FIL."""
    print_header("FIL EXPORT")

    trace = PrecalTrace(
        px_per_mm=args.px_per_mm or 1.0,
        centre_px=(0.0, 0.0),
        radii_mm=rotate_radii(fil.radii_mm, args.rotate) if args.rotate else np.asarray(fil.radii_mm),
    )
    job = args.job or fil.job or "DEMO"
    try:
        text = engine.build_fil_from_trace(job, trace)
    except ValueError as e:
        print(f"  ✗ Export FAILED\n    Error: {e}")
        sys.exit(1)
    path = save_fil(args.export, job, text)
    print(f"  → Saved: {path}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Inspect and fit lens-tracer FIL files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("fil_path", help="Path to the FIL file")
    parser.add_argument("-n", "--samples", type=int, default=800,
                        help="Radii per trace")
    parser.add_argument("--rotate", type=float, default=0.0,
                        help="Rotate the shape (degrees, CCW)")
    parser.add_argument("--px-per-mm", type=float, default=None,
                        help="Face scale in px/mm")
    parser.add_argument("--midline-x", type=float, default=None,
                        help="Vertical midline column (px)")
    parser.add_argument("--midline", type=float, nargs=4, default=None,
                        metavar=("X1", "Y1", "X2", "Y2"),
                        help="Midline through two points (px)")
    parser.add_argument("--pupil-od", type=float, nargs=2, default=None,
                        metavar=("X", "Y"), help="Right-eye pupil (image left)")
    parser.add_argument("--pupil-oi", type=float, nargs=2, default=None,
                        metavar=("X", "Y"), help="Left-eye pupil (image right)")
    parser.add_argument("--dbl", type=float, default=None,
                        help="Distance between lenses (mm)")
    parser.add_argument("--export", default=None,
                        help="Directory for a normalized FIL export")
    parser.add_argument("--job", default=None, help="Job id for the export")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Print engine diagnostics")

    args = parser.parse_args()

    # Validate input
    if not os.path.exists(args.fil_path):
        print(f"Error: FIL not found: {args.fil_path}")
        sys.exit(1)

    engine = FrameFitting(n_samples=args.samples, verbose=args.verbose)

    try:
        fil = engine.load_fil(args.fil_path)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    show_fil(fil, args.rotate)

    if args.pupil_od or args.pupil_oi:
        run_fit(engine, fil, args)

    if args.export:
        run_export(engine, fil, args)

    print("\n✓ Done!")


if __name__ == "__main__":
    main()

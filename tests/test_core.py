import json
import math

import numpy as np
import pytest

from fil_engine.core import FrameFitting, PrecalTrace
from fil_engine.fil_format import parse_fil_text
from fil_engine.mapping import Midline
from fil_engine.radii import RadiusBias


@pytest.fixture
def engine():
    return FrameFitting()


def test_shape_uses_fil_box_without_rotation(engine, ellipse_fil_text):
    fil = engine.parse_fil(ellipse_fil_text)
    contour, geometry = engine.shape(fil)
    assert geometry.hbox_mm == pytest.approx(52.1)
    assert geometry.vbox_mm == pytest.approx(36.0)
    assert contour.hbox == pytest.approx(52.0)


def test_shape_rotated_uses_computed_box(engine, ellipse_fil_text):
    fil = engine.parse_fil(ellipse_fil_text)
    _, geometry = engine.shape(fil, rotation_deg=90)
    assert geometry.hbox_mm == pytest.approx(36.0, abs=0.01)
    assert geometry.vbox_mm == pytest.approx(52.0, abs=0.01)


def test_fit_binocular(engine, ellipse_fil_text):
    fil = engine.parse_fil(ellipse_fil_text)
    result = engine.fit(
        fil,
        pupil_od=(300.0, 500.0),
        pupil_oi=(900.0, 500.0),
        midline=Midline.vertical(600.0),
        px_per_mm=10.0,
    )

    assert result.is_valid
    assert result.job == "1234"
    assert result.px_per_mm == 10.0
    assert result.metrics.dnp_total_mm == pytest.approx(60.0)
    assert result.placement.centre_od_px[0] == pytest.approx(250.0)
    assert result.placement.centre_oi_px[0] == pytest.approx(950.0)
    assert result.placement.dbl_mm == 18.0
    assert result.box_check.diff_hbox_pct < 1.0
    assert math.isfinite(result.metrics.bridge_mm)
    assert result.warnings == []
    assert "HBOX=52.10mm" in str(result)


def test_fit_centre_row_defaults_to_mean_pupil_row(engine, circle_fil_text):
    fil = engine.parse_fil(circle_fil_text)
    result = engine.fit(fil, (300.0, 500.0), (900.0, 520.0), Midline.vertical(600.0), 10.0, dbl_mm=20.0)
    assert result.placement.centre_od_px[1] == pytest.approx(510.0)
    assert result.placement.dbl_mm == 20.0


def test_fit_without_pupils_collects_error(engine, circle_fil_text):
    fil = engine.parse_fil(circle_fil_text)
    result = engine.fit(fil, None, None, Midline.vertical(600.0), 10.0)
    assert not result.is_valid
    assert result.errors
    assert "invalid" in str(result)


def test_fit_with_centre_row_but_no_pupils(engine, circle_fil_text):
    fil = engine.parse_fil(circle_fil_text)
    result = engine.fit(fil, None, None, Midline.vertical(600.0), 10.0, centre_y_px=400.0)
    assert result.placement is not None
    assert not result.is_valid
    assert result.errors == ["No usable pupil for measurement"]


def test_fit_invalid_scale_warns(engine, circle_fil_text):
    fil = engine.parse_fil(circle_fil_text)
    result = engine.fit(fil, (300.0, 500.0), None, Midline.vertical(600.0), math.nan)
    assert result.is_valid
    assert result.px_per_mm == 6.0
    assert any("fallback" in w for w in result.warnings)


def test_fit_short_fil_warns(engine):
    fil = engine.parse_fil("R=2500;2500;2500;2500;2500;2500;2500;2500;2500;2500")
    result = engine.fit(fil, (300.0, 500.0), (900.0, 500.0), Midline.vertical(600.0), 10.0)
    assert result.is_valid
    assert any("padded" in w for w in result.warnings)


def test_result_to_dict_is_json_serializable(engine, ellipse_fil_text):
    fil = engine.parse_fil(ellipse_fil_text)
    result = engine.fit(fil, (300.0, 500.0), None, Midline.vertical(600.0), 10.0)
    d = result.to_dict()
    text = json.dumps(d, allow_nan=False)
    assert '"MONO_OD"' in text
    assert len(d["outline_od_px"]) == 800


def test_load_fil(engine, tmp_path, circle_fil_text):
    path = tmp_path / "c.FIL"
    path.write_text(circle_fil_text, encoding="iso-8859-1")
    fil = engine.load_fil(path)
    assert fil.job == "CIRCLE"


def test_build_fil_from_traced_radii(engine, circle_radii):
    trace = PrecalTrace(px_per_mm=10.0, centre_px=(0.0, 0.0), radii_mm=circle_radii)
    text = engine.build_fil_from_trace("T1", trace)
    assert "R=" + "2500;" * 8 in text
    assert "HBOX=50.00;?" in text
    assert "FRAM=T1" in text


def test_build_fil_from_outline(engine):
    theta = np.linspace(0.0, 2.0 * np.pi, 360, endpoint=False)
    outline = np.column_stack([500.0 + 250.0 * np.cos(theta), 500.0 + 250.0 * np.sin(theta)])
    trace = PrecalTrace(px_per_mm=10.0, centre_px=(500.0, 500.0), outline_px=outline)

    fil = parse_fil_text(engine.build_fil_from_trace("T2", trace))
    assert np.allclose(fil.radii_mm, 25.0, atol=0.03)
    assert fil.hbox_mm == pytest.approx(50.0, abs=0.1)


def test_build_fil_incomplete_radii_fall_back_to_outline(engine):
    theta = np.linspace(0.0, 2.0 * np.pi, 360, endpoint=False)
    outline = np.column_stack([500.0 + 200.0 * np.cos(theta), 500.0 + 200.0 * np.sin(theta)])
    trace = PrecalTrace(
        px_per_mm=10.0,
        centre_px=(500.0, 500.0),
        radii_mm=np.full(400, 25.0),
        outline_px=outline,
    )
    fil = parse_fil_text(engine.build_fil_from_trace("T3", trace))
    assert np.allclose(fil.radii_mm, 20.0, atol=0.03)


def test_build_fil_with_flat_bias_keeps_radii(circle_radii):
    engine = FrameFitting(radius_bias=RadiusBias(np.full(800, 0.2)))
    trace = PrecalTrace(px_per_mm=10.0, centre_px=(0.0, 0.0), radii_mm=circle_radii)
    fil = parse_fil_text(engine.build_fil_from_trace("B", trace))
    assert np.allclose(fil.radii_mm, 25.0)


@pytest.mark.parametrize("trace", [
    PrecalTrace(px_per_mm=10.0, centre_px=(0.0, 0.0), valid=False, reason_if_invalid="blurred"),
    PrecalTrace(px_per_mm=0.0, centre_px=(0.0, 0.0), radii_mm=np.full(800, 25.0)),
    PrecalTrace(px_per_mm=10.0, centre_px=(0.0, 0.0)),
])
def test_build_fil_rejects_bad_traces(engine, trace):
    with pytest.raises(ValueError):
        engine.build_fil_from_trace("X", trace)


def test_fit_ignores_non_finite_pupil_for_placement(engine, circle_fil_text):
    fil = engine.parse_fil(circle_fil_text)
    result = engine.fit(fil, (300.0, math.nan), (900.0, 500.0), Midline.vertical(600.0), 10.0)

    assert result.is_valid
    assert result.metrics.mode == "MONO_OI"
    assert result.placement.centre_od_px == pytest.approx((260.0, 500.0))
    assert np.all(np.isfinite(result.placement.outline_oi_px))
    assert math.isfinite(result.metrics.useful_diameter_oi_mm)
    assert any("Pupil OD" in w for w in result.warnings)
    json.dumps(result.to_dict(), allow_nan=False)


def test_fit_non_finite_centre_row_falls_back_to_pupils(engine, circle_fil_text):
    fil = engine.parse_fil(circle_fil_text)
    result = engine.fit(
        fil, (300.0, 480.0), (900.0, 520.0), Midline.vertical(600.0), 10.0, centre_y_px=math.nan
    )
    assert result.placement.centre_oi_px[1] == pytest.approx(500.0)
    assert any("centre row" in w for w in result.warnings)

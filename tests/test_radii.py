import numpy as np
import pytest

from fil_engine.radii import (
    RadiusBias,
    angle_to_steps,
    clamp_diffs_circular,
    fill_missing_circular,
    median_filter_circular,
    parse_r_hundredths,
    radii_are_complete,
    regularize_radii,
    rotate_radii,
    shift_radii,
    smooth_circular,
    to_hundredths,
    to_millimetres,
)


def test_parse_r_hundredths_reads_only_r_lines():
    text = "JOB=\"1\"\nR=2500;2501;abc;\nX=1;2\n  R=2502;\n"
    assert parse_r_hundredths(text).tolist() == [2500, 2501, 2502]


def test_to_millimetres_hundredths_heuristic():
    assert to_millimetres([2500, 25.0, 199, 200]).tolist() == [25.0, 25.0, 199.0, 2.0]


def test_to_hundredths_rounds_half_up_and_clamps():
    assert to_hundredths([25.0, 0.125, -1.0]).tolist() == [2500, 13, 0]


def test_rotate_quarter_turn():
    r = np.arange(800)
    out = rotate_radii(r, 90)
    assert out[200] == 0
    assert out[0] == 600
    assert np.array_equal(out, np.roll(r, 200))


def test_rotate_negative_angle():
    r = np.arange(800)
    out = rotate_radii(r, -90)
    assert out[0] == 200


def test_rotate_sub_step_and_full_turn_are_identity():
    r = np.arange(800)
    assert np.array_equal(rotate_radii(r, 0.3), r)
    assert np.array_equal(rotate_radii(r, 360), r)
    assert np.array_equal(rotate_radii(r, 0), r)


def test_rotate_returns_copy():
    r = np.arange(800)
    out = rotate_radii(r, 0)
    out[0] = -1
    assert r[0] == 0


def test_rotate_empty():
    assert len(rotate_radii([], 45)) == 0


def test_shift_radii_wraps():
    assert shift_radii([1, 2, 3, 4], 1).tolist() == [4, 1, 2, 3]
    assert shift_radii([1, 2, 3, 4], -1).tolist() == [2, 3, 4, 1]


def test_angle_to_steps_truncates_toward_zero():
    assert angle_to_steps(45, 800) == 100
    assert angle_to_steps(-0.4, 800) == 0
    assert angle_to_steps(-45.3, 800) == -100


def test_fill_missing_wraps_around():
    out = fill_missing_circular([1.0, np.nan, 3.0, np.nan])
    assert out.tolist() == [1.0, 2.0, 3.0, 2.0]


def test_fill_missing_single_and_empty():
    assert fill_missing_circular([np.nan, 5.0, np.nan]).tolist() == [5.0, 5.0, 5.0]
    out = fill_missing_circular([np.nan, np.nan])
    assert np.all(np.isnan(out))


def test_median_filter_removes_spike():
    r = np.full(800, 2500)
    r[10] = 3000
    assert np.all(median_filter_circular(r, 5) == 2500)


def test_even_window_is_identity():
    r = np.arange(10)
    assert np.array_equal(median_filter_circular(r, 4), r)
    assert np.array_equal(smooth_circular(r, 4), r)


def test_clamp_diffs_limits_jumps():
    r = np.full(800, 2500)
    r[100] = 2600
    out = clamp_diffs_circular(r)
    diffs = out - np.roll(out, 1)
    assert np.abs(diffs).max() <= 12
    assert out[100] == 2512
    assert out[101] == 2500


def test_clamp_diffs_constant_is_unchanged():
    r = np.full(800, 2500)
    assert np.array_equal(clamp_diffs_circular(r), r)


def test_regularize_flattens_alternating_noise():
    r = np.full(800, 2500)
    r[::2] += 3
    r[1::2] -= 3
    out = regularize_radii(r)
    assert np.abs(out - 2500).max() <= 1


def test_radius_bias_wrong_count():
    with pytest.raises(ValueError):
        RadiusBias([0.1] * 10)


def test_radius_bias_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        RadiusBias.from_file(tmp_path / "nope.txt")


def test_radius_bias_from_file_ignores_comments(tmp_path):
    path = tmp_path / "bias.txt"
    path.write_text("# reference bias\n\n" + "\n".join(["0.1"] * 800) + "\n")
    bias = RadiusBias.from_file(path)
    r = np.full(800, 2500)
    assert np.array_equal(bias.apply(r), r)


def test_radius_bias_applies_deviation_only():
    values = np.zeros(800)
    values[0] = 0.5
    bias = RadiusBias(values)
    out = bias.apply(np.full(800, 2500))
    assert out[0] == 2450
    assert out[1] == 2500


def test_radius_bias_shift():
    values = np.zeros(800)
    values[0] = 0.5
    bias = RadiusBias(values, shift_steps=10)
    assert bias.values[10] == 0.5


def test_radii_are_complete():
    assert radii_are_complete(np.full(800, 25.0))
    assert not radii_are_complete(np.full(799, 25.0))
    r = np.full(800, 25.0)
    r[3] = np.nan
    assert not radii_are_complete(r)
    r[3] = 0.0
    assert not radii_are_complete(r)

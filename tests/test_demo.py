import sys

import numpy as np
import pytest

import demo
from conftest import fil_from_radii


def run_demo(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["demo.py", *argv])
    demo.main()


def test_demo_exports_normalized_fil(monkeypatch, tmp_path, capsys, circle_fil_text):
    path = tmp_path / "job.FIL"
    path.write_text(circle_fil_text, encoding="iso-8859-1")

    run_demo(monkeypatch, str(path), "--export", str(tmp_path / "out"), "--job", "J7")

    assert (tmp_path / "out" / "J7.FIL").exists()
    assert "Done" in capsys.readouterr().out


def test_demo_export_failure_exits_cleanly(monkeypatch, tmp_path, capsys):
    radii = np.full(800, 25.0)
    radii[10] = 0.0
    path = tmp_path / "zero.FIL"
    path.write_text(fil_from_radii(radii), encoding="iso-8859-1")

    with pytest.raises(SystemExit) as exc:
        run_demo(monkeypatch, str(path), "--export", str(tmp_path / "out"))

    assert exc.value.code == 1
    assert "Error: Empty trace outline" in capsys.readouterr().out
    assert not (tmp_path / "out").exists()


def test_demo_missing_file(monkeypatch, tmp_path):
    with pytest.raises(SystemExit) as exc:
        run_demo(monkeypatch, str(tmp_path / "nope.FIL"))
    assert exc.value.code == 1

import pytest
from fastapi.testclient import TestClient

import fil_service
from main import app


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("FIL_EXPORT_DIR", str(tmp_path / "exports"))
    monkeypatch.delenv("FIL_RADIUS_BIAS_PATH", raising=False)
    monkeypatch.setattr(fil_service, "_service", None)
    return TestClient(app)


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_parse_fil(client, ellipse_fil_text):
    response = client.post("/api/parse-fil", json={"fil_text": ellipse_fil_text})
    assert response.status_code == 200
    data = response.json()
    assert data["fil"]["job"] == "1234"
    assert data["fil"]["hbox_mm"] == pytest.approx(52.1)
    assert data["geometry"]["hbox_mm"] == pytest.approx(52.0)
    assert len(data["fil"]["radii_mm"]) == 800


def test_parse_fil_without_radii(client):
    response = client.post("/api/parse-fil", json={"fil_text": "REQ=FIL\n"})
    assert response.status_code == 400


def test_rotate(client, ellipse_fil_text):
    response = client.post("/api/rotate", json={"fil_text": ellipse_fil_text, "angle_deg": 90})
    assert response.status_code == 200
    data = response.json()
    assert len(data["radii_mm"]) == 800
    assert data["radii_mm"][200] == pytest.approx(26.0)
    assert data["geometry"]["hbox_mm"] == pytest.approx(36.0, abs=0.01)


def test_measure_vertical_midline(client, ellipse_fil_text):
    response = client.post("/api/measure", json={
        "fil_text": ellipse_fil_text,
        "px_per_mm": 10.0,
        "midline_x": 600.0,
        "pupil_od": [300.0, 500.0],
        "pupil_oi": [900.0, 500.0],
        "rim_bottom_od": 700.0,
    })
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["metrics"]["mode"] == "BINOC"
    assert data["metrics"]["dnp_total_mm"] == pytest.approx(60.0)
    assert data["metrics"]["height_od_mm"] == pytest.approx(20.0)
    assert data["metrics"]["height_oi_mm"] is None


def test_measure_oblique_midline(client, circle_fil_text):
    response = client.post("/api/measure", json={
        "fil_text": circle_fil_text,
        "px_per_mm": 10.0,
        "midline": [[600.0, 0.0], [700.0, 1000.0]],
        "pupil_od": [320.0, 500.0],
    })
    assert response.status_code == 200
    data = response.json()
    assert data["metrics"]["mode"] == "MONO_OD"
    assert data["metrics"]["npd_mm"] == pytest.approx(33.0)


def test_measure_without_pupils_is_not_successful(client, circle_fil_text):
    response = client.post("/api/measure", json={
        "fil_text": circle_fil_text,
        "px_per_mm": 10.0,
        "midline_x": 600.0,
    })
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is False
    assert data["errors"]


def test_measure_requires_midline(client, circle_fil_text):
    response = client.post("/api/measure", json={
        "fil_text": circle_fil_text,
        "pupil_od": [300.0, 500.0],
    })
    assert response.status_code == 400


def test_measure_rejects_bad_point(client, circle_fil_text):
    response = client.post("/api/measure", json={
        "fil_text": circle_fil_text,
        "midline_x": 600.0,
        "pupil_od": [300.0],
    })
    assert response.status_code == 400


def test_export_and_list(client):
    response = client.post("/api/export-fil", json={
        "job_id": "J42",
        "px_per_mm": 10.0,
        "centre_px": [0.0, 0.0],
        "radii_mm": [25.0] * 800,
    })
    assert response.status_code == 200
    data = response.json()
    assert data["file"].startswith("J42_")
    assert data["file"].endswith(".FIL")
    assert data["fil_text"].startswith("REQ=FIL\n")
    assert data["trace_file"] == data["file"][:-4] + "_trace"
    assert data["geometry"]["hbox_mm"] == pytest.approx(50.0, abs=0.01)

    listing = client.get("/api/exports").json()
    assert listing["files"] == [data["file"]]

    download = client.get(f"/api/exports/{data['file']}")
    assert download.status_code == 200
    assert download.text == data["fil_text"]


def test_export_invalid_scale(client):
    response = client.post("/api/export-fil", json={
        "job_id": "J1",
        "px_per_mm": 0.0,
        "centre_px": [0.0, 0.0],
        "radii_mm": [25.0] * 800,
    })
    assert response.status_code == 400


def test_missing_export(client):
    assert client.get("/api/exports/nope.FIL").status_code == 404


def test_same_instant_exports_keep_both_files(client, monkeypatch):
    from datetime import datetime

    class FrozenClock:
        @staticmethod
        def now():
            return datetime(2026, 10, 17, 3, 24, 12, 500)

    monkeypatch.setattr(fil_service, "datetime", FrozenClock)
    first = client.post("/api/export-fil", json={
        "job_id": "J", "px_per_mm": 10.0, "centre_px": [0.0, 0.0], "radii_mm": [25.0] * 800,
    }).json()
    second = client.post("/api/export-fil", json={
        "job_id": "J", "px_per_mm": 10.0, "centre_px": [0.0, 0.0], "radii_mm": [20.0] * 800,
    }).json()

    assert first["file"] != second["file"]
    assert first["trace_file"] != second["trace_file"]
    assert client.get("/api/exports").json()["files"] == sorted([first["file"], second["file"]])
    assert "R=2500;" in client.get(f"/api/exports/{first['file']}").text
    assert "R=2000;" in client.get(f"/api/exports/{second['file']}").text

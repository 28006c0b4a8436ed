import numpy as np
import pytest

from fil_engine.contour import polar_angles


def ellipse_radii(a: float, b: float, n: int = 800) -> np.ndarray:
    theta = polar_angles(n)
    return (a * b) / np.sqrt((b * np.cos(theta)) ** 2 + (a * np.sin(theta)) ** 2)


def fil_from_radii(radii_mm, job: str = "1234", extra: str = "") -> str:
    hundredths = np.floor(np.asarray(radii_mm) * 100.0 + 0.5).astype(int)
    lines = ["REQ=FIL", f'JOB="{job}"', "STATUS=0", f"TRCFMT=1;{len(hundredths)};E;R;D"]
    for start in range(0, len(hundredths), 8):
        lines.append("R=" + "".join(f"{v};" for v in hundredths[start:start + 8]))
    lines.append(extra)
    return "\n".join(lines) + "\n"


@pytest.fixture
def circle_radii():
    return np.full(800, 25.0)


@pytest.fixture
def ellipse_26_18():
    return ellipse_radii(26.0, 18.0)


@pytest.fixture
def ellipse_fil_text(ellipse_26_18):
    return fil_from_radii(ellipse_26_18, extra="HBOX=52.10;?\nVBOX=36.00;?\nFED=52.00;?")


@pytest.fixture
def circle_fil_text(circle_radii):
    return fil_from_radii(circle_radii, job="CIRCLE")

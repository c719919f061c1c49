import cv2
import numpy as np
import pytest

from pedtrack.calibration import ExtrinsicCalibration, IntrinsicCalibration

FX = 800.0
CX, CY = 320.0, 240.0
CAMERA_Z = 500.0


@pytest.fixture
def intrinsic():
    return IntrinsicCalibration(FX, FX, CX, CY, np.zeros(5), (640, 480))


@pytest.fixture
def extr(intrinsic):
    """Camera 5 m above the origin looking straight down; image x = world X, image y = -world Y."""
    return ExtrinsicCalibration.from_pose(intrinsic, [np.pi, 0.0, 0.0], [0.0, 0.0, CAMERA_Z])


@pytest.fixture
def make_frame():
    def _make(centers, radius=10, color=(0, 0, 255), background=(40, 40, 40), size=(480, 640)):
        img = np.full((size[0], size[1], 3), background, np.uint8)
        for c in centers:
            cv2.circle(img, (int(round(c[0])), int(round(c[1]))), radius, color, -1)
        return img
    return _make

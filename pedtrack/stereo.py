"""
Stereo context: disparity of a rectified image pair and the 3D positions /
heights derived from it. The left camera is the one described by the
extrinsic calibration; the right camera sits ``baseline`` cm to its right.
"""

from typing import Optional

import cv2
import numpy as np

from . import config
from .calibration import ExtrinsicCalibration
from .errors import NotCalibratedError
from .utils import to_gray
from .vector import Vec3F


class StereoContext:
    def __init__(self, extr: ExtrinsicCalibration, baseline: float,
                 num_disparities: int = config.STEREO_NUM_DISPARITIES,
                 block_size: int = config.STEREO_BLOCK_SIZE,
                 min_disparity: int = 0,
                 neighbourhood: int = config.STEREO_NEIGHBOURHOOD):
        if baseline <= 0:
            raise ValueError(f"stereo baseline must be positive, got {baseline}")
        self.extr = extr
        self.baseline = float(baseline)
        self.num_disparities = int(np.ceil(num_disparities / 16.0) * 16)
        self.block_size = block_size | 1
        self.min_disparity = min_disparity
        self.neighbourhood = neighbourhood
        self._left: Optional[np.ndarray] = None
        self._right: Optional[np.ndarray] = None
        self._disparity: Optional[np.ndarray] = None
        self._heights: Optional[np.ndarray] = None

    def init(self, left: np.ndarray, right: np.ndarray):
        """Sets a new image pair; derived maps are recomputed on demand."""
        if left.shape[:2] != right.shape[:2]:
            raise ValueError(f"stereo images differ in size: {left.shape[:2]} vs {right.shape[:2]}")
        self._left, self._right = to_gray(left), to_gray(right)
        self._disparity = None
        self._heights = None

    def set_disparity(self, disparity: np.ndarray):
        """Uses an externally computed disparity map (px, NaN or <= 0 for invalid)."""
        d = np.asarray(disparity, dtype=np.float32).copy()
        d[~(d > 0)] = np.nan
        self._disparity = d
        self._heights = None

    def get_disparity(self) -> Optional[np.ndarray]:
        if self._disparity is None and self._left is not None:
            sgbm = cv2.StereoSGBM_create(
                minDisparity=self.min_disparity,
                numDisparities=self.num_disparities,
                blockSize=self.block_size,
                P1=8 * self.block_size ** 2,
                P2=32 * self.block_size ** 2,
                uniquenessRatio=10,
                speckleWindowSize=100,
                speckleRange=2,
            )
            raw = sgbm.compute(self._left, self._right).astype(np.float32) / 16.0
            raw[raw <= max(self.min_disparity, 0)] = np.nan
            self._disparity = raw
        return self._disparity

    def _median_disparity(self, pos) -> Optional[float]:
        disp = self.get_disparity()
        if disp is None:
            return None
        x, y = int(round(pos[0])), int(round(pos[1]))
        r = self.neighbourhood
        h, w = disp.shape
        if not (0 <= x < w and 0 <= y < h):
            return None
        window = disp[max(y - r, 0):y + r + 1, max(x - r, 0):x + r + 1]
        valid = window[np.isfinite(window)]
        if valid.size == 0:
            return None
        return float(np.median(valid))

    def point_3d(self, pos) -> Optional[Vec3F]:
        """Camera-frame position (cm) seen at pixel ``pos``; None where disparity is invalid."""
        d = self._median_disparity(pos)
        if d is None or d <= 0:
            return None
        intr = self.extr.intrinsic
        z = intr.fx * self.baseline / d
        return Vec3F((pos[0] - intr.cx) * z / intr.fx, (pos[1] - intr.cy) * z / intr.fy, z)

    def world_point(self, pos) -> Optional[Vec3F]:
        pc = self.point_3d(pos)
        if pc is None:
            return None
        if not self.extr.is_calibrated:
            raise NotCalibratedError("stereo world positions need the extrinsic calibration")
        Xw = self.extr.R.T @ (pc.to_array() - self.extr.tvec)
        return Vec3F.from_array(Xw)

    def height_at(self, pos) -> Optional[float]:
        p = self.world_point(pos)
        return None if p is None else p.z

    def height_map(self) -> Optional[np.ndarray]:
        """World Z for every pixel (NaN where the disparity is invalid)."""
        if self._heights is not None:
            return self._heights
        disp = self.get_disparity()
        if disp is None or not self.extr.is_calibrated:
            return None
        intr = self.extr.intrinsic
        h, w = disp.shape
        u, v = np.meshgrid(np.arange(w, dtype=np.float32), np.arange(h, dtype=np.float32))
        with np.errstate(divide="ignore", invalid="ignore"):
            z = intr.fx * self.baseline / disp
        xc = (u - intr.cx) * z / intr.fx
        yc = (v - intr.cy) * z / intr.fy
        R, t = self.extr.R, self.extr.tvec
        self._heights = (R[0, 2] * (xc - t[0]) + R[1, 2] * (yc - t[1]) + R[2, 2] * (z - t[2])).astype(np.float32)
        return self._heights

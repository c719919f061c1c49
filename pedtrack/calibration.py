"""
Camera calibration.

- IntrinsicCalibration: pinhole camera matrix + OpenCV distortion model
  (k1 k2 p1 p2 k3 [k4 k5 k6]), forward distortion and iterative inverse,
  remap tables for undistorting whole frames, chessboard calibration.
- ExtrinsicCalibration: world -> camera pose (rvec/tvec) from point
  correspondences, image <-> world conversion at a given height.

World frame: Z up, ground plane Z = 0, units cm.
"""

import glob
import json
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from . import config
from .errors import CalibrationError, NotCalibratedError
from .vector import Vec2F, Vec3F


def make_projection(K: np.ndarray, R: np.ndarray, t: np.ndarray) -> np.ndarray:
    Rt = np.hstack([R, t.reshape(3, 1)])
    return K @ Rt


def camera_center(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    return (-R.T @ t.reshape(3, 1)).reshape(3)


def _dist8(dist) -> np.ndarray:
    d = np.zeros(8, dtype=float)
    src = np.asarray(dist if dist is not None else [], dtype=float).reshape(-1)[:8]
    d[:src.size] = src
    return d


# ===============================
# Intrinsic calibration
# ===============================
@dataclass
class IntrinsicCalibration:
    fx: float
    fy: float
    cx: float
    cy: float
    dist: np.ndarray = field(default_factory=lambda: np.zeros(5))
    image_size: Optional[Tuple[int, int]] = None   # (w, h)
    rms: Optional[float] = None

    def __post_init__(self):
        self.dist = np.asarray(self.dist, dtype=float).reshape(-1)
        if self.dist.size not in (4, 5, 8):
            raise CalibrationError(f"unsupported number of distortion coefficients: {self.dist.size}")

    @property
    def camera_matrix(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx],
                         [0.0, self.fy, self.cy],
                         [0.0, 0.0, 1.0]], dtype=float)

    @property
    def dist_coeffs(self) -> np.ndarray:
        return self.dist.copy()

    def has_distortion(self) -> bool:
        return bool(np.any(self.dist != 0))

    @staticmethod
    def from_matrix(K, dist=None, image_size=None, rms=None) -> "IntrinsicCalibration":
        K = np.asarray(K, dtype=float).reshape(3, 3)
        d = np.zeros(5) if dist is None else np.asarray(dist, dtype=float).reshape(-1)
        if d.size > 8:
            # OpenCV 12/14 coefficient models; thin prism and tilt terms are not modelled
            if np.any(d[8:] != 0):
                raise CalibrationError(f"distortion model with {d.size} coefficients is not supported "
                                       f"(non-zero thin prism or tilt terms)")
            d = d[:8]
        return IntrinsicCalibration(K[0, 0], K[1, 1], K[0, 2], K[1, 2], d,
                                    tuple(image_size) if image_size is not None else None, rms)

    @staticmethod
    def from_dict(data: dict) -> "IntrinsicCalibration":
        K = data.get("K", data.get("mtx"))
        if K is None:
            raise KeyError("calibration has no camera matrix ('K' or 'mtx')")
        dist = data.get("dist", data.get("distCoeffs"))
        return IntrinsicCalibration.from_matrix(K, dist, data.get("image_size"), data.get("rms"))

    @staticmethod
    def from_json(path: str) -> "IntrinsicCalibration":
        with open(path, "r") as f:
            return IntrinsicCalibration.from_dict(json.load(f))

    def to_dict(self) -> dict:
        return {
            "mtx": self.camera_matrix.tolist(),
            "dist": self.dist.tolist(),
            "image_size": list(self.image_size) if self.image_size else None,
            "rms": self.rms,
        }

    # ---- point model ----
    def _normalize(self, pts: np.ndarray) -> np.ndarray:
        return np.column_stack([(pts[:, 0] - self.cx) / self.fx, (pts[:, 1] - self.cy) / self.fy])

    def _to_pixel(self, xn: np.ndarray) -> np.ndarray:
        return np.column_stack([xn[:, 0] * self.fx + self.cx, xn[:, 1] * self.fy + self.cy])

    def distort_normalized(self, xn: np.ndarray) -> np.ndarray:
        k1, k2, p1, p2, k3, k4, k5, k6 = _dist8(self.dist)
        x, y = xn[:, 0], xn[:, 1]
        r2 = x * x + y * y
        radial = (1 + ((k3 * r2 + k2) * r2 + k1) * r2) / (1 + ((k6 * r2 + k5) * r2 + k4) * r2)
        xd = x * radial + 2 * p1 * x * y + p2 * (r2 + 2 * x * x)
        yd = y * radial + p1 * (r2 + 2 * y * y) + 2 * p2 * x * y
        return np.column_stack([xd, yd])

    def distort_points(self, pts) -> np.ndarray:
        """Ideal (undistorted) pixel coordinates -> pixel coordinates seen by the lens."""
        pts = np.asarray(pts, dtype=float).reshape(-1, 2)
        return self._to_pixel(self.distort_normalized(self._normalize(pts)))

    def undistort_normalized(self, xd: np.ndarray,
                             max_iter: int = config.UNDISTORT_MAX_ITER,
                             eps: float = config.UNDISTORT_EPS) -> np.ndarray:
        """
        Fixed-point inversion of the distortion model. Stops when every point's
        squared re-distortion residual is below ``eps`` or after ``max_iter``
        rounds; each point keeps its best iterate, so the result never gets
        worse than the best approximation found.
        """
        k1, k2, p1, p2, k3, k4, k5, k6 = _dist8(self.dist)
        x = xd.copy()
        best = x.copy()
        best_err = np.full(len(x), np.inf)
        for _ in range(max_iter + 1):
            err = np.sum((self.distort_normalized(x) - xd) ** 2, axis=1)
            better = err < best_err
            best[better] = x[better]
            best_err[better] = err[better]
            if np.all(best_err < eps):
                break
            r2 = x[:, 0] ** 2 + x[:, 1] ** 2
            icdist = (1 + ((k6 * r2 + k5) * r2 + k4) * r2) / (1 + ((k3 * r2 + k2) * r2 + k1) * r2)
            dx = 2 * p1 * x[:, 0] * x[:, 1] + p2 * (r2 + 2 * x[:, 0] ** 2)
            dy = p1 * (r2 + 2 * x[:, 1] ** 2) + 2 * p2 * x[:, 0] * x[:, 1]
            x = np.column_stack([(xd[:, 0] - dx) * icdist, (xd[:, 1] - dy) * icdist])
            x[~np.isfinite(x)] = xd[~np.isfinite(x)]
        return best

    def undistort_points(self, pts, max_iter: int = config.UNDISTORT_MAX_ITER,
                         eps: float = config.UNDISTORT_EPS) -> np.ndarray:
        """Pixel coordinates seen by the lens -> ideal pixel coordinates."""
        pts = np.asarray(pts, dtype=float).reshape(-1, 2)
        if not self.has_distortion():
            return pts.copy()
        return self._to_pixel(self.undistort_normalized(self._normalize(pts), max_iter, eps))

    # ---- images ----
    def undistort_maps(self, size: Tuple[int, int]):
        """Remap tables (map1, map2) for an image of ``size`` = (w, h); the camera matrix is kept."""
        K = self.camera_matrix
        return cv2.initUndistortRectifyMap(K, self.dist, None, K, tuple(int(v) for v in size), cv2.CV_32FC1)

    def undistort_image(self, img: np.ndarray) -> np.ndarray:
        h, w = img.shape[:2]
        map1, map2 = self.undistort_maps((w, h))
        return cv2.remap(img, map1, map2, interpolation=cv2.INTER_LINEAR)

    @staticmethod
    def calibrate_from_images(paths: Sequence[str],
                              board_size: Tuple[int, int] = config.CHESSBOARD_SIZE,
                              square_size: float = config.CHESSBOARD_SQUARE,
                              verbose: bool = config.VERBOSE) -> "IntrinsicCalibration":
        """Chessboard calibration. ``paths`` may contain glob patterns."""
        files: List[str] = []
        for p in paths:
            files.extend(sorted(glob.glob(p)) or [p])

        objp = np.zeros((board_size[0] * board_size[1], 3), np.float32)
        objp[:, :2] = np.mgrid[0:board_size[0], 0:board_size[1]].T.reshape(-1, 2) * square_size
        criteria = (cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_MAX_ITER, 30, 0.001)

        obj_points, img_points, size = [], [], None
        for path in files:
            img = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
            if img is None:
                print(f"[WARNING] Could not read calibration image: {path}")
                continue
            if size is None:
                size = (img.shape[1], img.shape[0])
            elif size != (img.shape[1], img.shape[0]):
                print(f"[WARNING] Skipping {path}: size differs from first image {size}")
                continue
            found, corners = cv2.findChessboardCorners(img, board_size, None)
            if not found:
                if verbose:
                    print(f"[INFO] No chessboard in {path}")
                continue
            corners = cv2.cornerSubPix(img, corners, (11, 11), (-1, -1), criteria)
            obj_points.append(objp)
            img_points.append(corners)

        if len(obj_points) < 3:
            raise CalibrationError(f"chessboard found in {len(obj_points)} images, need at least 3")

        rms, K, dist, _, _ = cv2.calibrateCamera(obj_points, img_points, size, None, None)
        if verbose:
            print(f"[INFO] Intrinsic calibration from {len(obj_points)} images, RMS = {rms:.3f} px")
        return IntrinsicCalibration.from_matrix(K, dist.reshape(-1)[:5], size, float(rms))


# ===============================
# Extrinsic calibration
# ===============================
class ExtrinsicCalibration:
    """
    Pose of the camera in the world frame. ``distorted`` tells whether the pixel
    coordinates handled here come from raw (not undistorted) frames.
    """

    def __init__(self, intrinsic: IntrinsicCalibration, distorted: bool = False):
        self.intrinsic = intrinsic
        self.distorted = distorted
        self.rvec: Optional[np.ndarray] = None
        self.tvec: Optional[np.ndarray] = None
        self.R: Optional[np.ndarray] = None
        self.P: Optional[np.ndarray] = None
        self.C: Optional[np.ndarray] = None
        self.reprojection_error: Optional[float] = None

    @staticmethod
    def from_pose(intrinsic: IntrinsicCalibration, rvec, tvec, distorted: bool = False) -> "ExtrinsicCalibration":
        extr = ExtrinsicCalibration(intrinsic, distorted)
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=float).reshape(3, 1))
        extr.update_pose(R, np.asarray(tvec, dtype=float))
        return extr

    @staticmethod
    def from_dict(data: dict, intrinsic: Optional[IntrinsicCalibration] = None) -> "ExtrinsicCalibration":
        if intrinsic is None:
            intrinsic = IntrinsicCalibration.from_dict(data)
        extr = ExtrinsicCalibration(intrinsic, bool(data.get("distorted", False)))
        rvec = data.get("rvec", data.get("rvecs"))
        tvec = data.get("tvec", data.get("tvecs"))
        if rvec is None or tvec is None or np.asarray(rvec).size < 3 or np.asarray(tvec).size < 3:
            print("[WARNING] No extrinsics in calibration data!")
            return extr
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=float).reshape(-1)[:3].reshape(3, 1))
        extr.update_pose(R, np.asarray(tvec, dtype=float).reshape(-1)[:3])
        extr.reprojection_error = data.get("reprojection_error")
        return extr

    @staticmethod
    def from_json(path: str) -> "ExtrinsicCalibration":
        print(f"[INFO] Loading calibration: {path}")
        with open(path, "r") as f:
            return ExtrinsicCalibration.from_dict(json.load(f))

    def to_dict(self) -> dict:
        data = self.intrinsic.to_dict()
        data["distorted"] = self.distorted
        if self.is_calibrated:
            data["rvec"] = self.rvec.reshape(-1).tolist()
            data["tvec"] = self.tvec.reshape(-1).tolist()
            data["reprojection_error"] = self.reprojection_error
        return data

    def save_json(self, path: str):
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @property
    def is_calibrated(self) -> bool:
        return self.R is not None

    def _require(self):
        if not self.is_calibrated:
            raise NotCalibratedError("extrinsic calibration is not set")

    def update_pose(self, R: np.ndarray, t: np.ndarray):
        self.R = np.asarray(R, dtype=float).copy()
        self.tvec = np.asarray(t, dtype=float).reshape(3)
        self.rvec = cv2.Rodrigues(self.R)[0].reshape(3)
        self.P = make_projection(self.intrinsic.camera_matrix, self.R, self.tvec)
        self.C = camera_center(self.R, self.tvec)

    def calibrate(self, world_points, image_points, verbose: bool = config.VERBOSE) -> float:
        """Estimates the pose from >= 4 world/image correspondences; returns the RMS reprojection error."""
        obj = np.asarray(world_points, dtype=np.float64).reshape(-1, 3)
        img = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
        if len(obj) != len(img):
            raise CalibrationError(f"{len(obj)} world points but {len(img)} image points")
        if len(obj) < 4:
            raise CalibrationError(f"need at least 4 correspondences, got {len(obj)}")

        K = self.intrinsic.camera_matrix
        dist = self.intrinsic.dist if self.distorted else np.zeros(5)
        success, rvec, tvec = cv2.solvePnP(obj, img, K, dist, flags=cv2.SOLVEPNP_ITERATIVE)
        if not success:
            success, rvec, tvec = cv2.solvePnP(obj, img, K, dist, flags=cv2.SOLVEPNP_SQPNP)
        if not success:
            raise CalibrationError("solvePnP failed")

        R, _ = cv2.Rodrigues(rvec)
        self.update_pose(R, tvec)
        projected, _ = cv2.projectPoints(obj, rvec, tvec, K, dist)
        self.reprojection_error = float(np.sqrt(np.mean(np.sum((img - projected.reshape(-1, 2)) ** 2, axis=1))))
        if verbose:
            c = self.C
            print(f"[INFO] Camera at X={c[0]:.1f}, Y={c[1]:.1f}, Z={c[2]:.1f} cm, "
                  f"reprojection error {self.reprojection_error:.3f} px")
        return self.reprojection_error

    # ---- conversions ----
    def get_image_point(self, p3d, height: Optional[float] = None) -> Vec2F:
        self._require()
        X = np.array([p3d[0], p3d[1], p3d[2] if height is None else height], dtype=float)
        Xc = self.R @ X + self.tvec
        if Xc[2] <= 0:
            raise CalibrationError(f"point {tuple(X)} lies behind the camera")
        uv = (self.P @ np.append(X, 1.0))
        px = np.array([[uv[0] / uv[2], uv[1] / uv[2]]])
        if self.distorted:
            px = self.intrinsic.distort_points(px)
        return Vec2F.from_array(px[0])

    def get_3d_point(self, p2d, height: float) -> Vec3F:
        """Intersects the viewing ray through pixel ``p2d`` with the plane Z = ``height``."""
        self._require()
        px = np.array([[p2d[0], p2d[1]]], dtype=float)
        if self.distorted:
            px = self.intrinsic.undistort_points(px)
        ray = self.R.T @ (np.linalg.inv(self.intrinsic.camera_matrix) @ np.array([px[0, 0], px[0, 1], 1.0]))
        if abs(ray[2]) < 1e-12:
            raise CalibrationError(f"viewing ray through {tuple(p2d)} is parallel to the plane Z={height}")
        s = (height - self.C[2]) / ray[2]
        if s <= 0:
            raise CalibrationError(f"plane Z={height} is not in front of the camera at pixel {tuple(p2d)}")
        return Vec3F.from_array(self.C + s * ray)

    def viewing_ray(self, p2d) -> Tuple[np.ndarray, np.ndarray]:
        self._require()
        px = np.array([[p2d[0], p2d[1]]], dtype=float)
        if self.distorted:
            px = self.intrinsic.undistort_points(px)
        d = self.R.T @ (np.linalg.inv(self.intrinsic.camera_matrix) @ np.array([px[0, 0], px[0, 1], 1.0]))
        return self.C.copy(), d / np.linalg.norm(d)

    @property
    def camera_position(self) -> Vec3F:
        self._require()
        return Vec3F.from_array(self.C)

    @property
    def camera_altitude(self) -> float:
        self._require()
        return float(self.C[2])

    def cm_per_pixel(self, pos, height: float = 0.0) -> float:
        a = self.get_3d_point(pos, height)
        b = self.get_3d_point((pos[0] + 1.0, pos[1]), height)
        return a.distance_to(b)


# ===============================
# Head size / search windows
# ===============================
def head_size_px(extr: ExtrinsicCalibration, pos, height: float = config.DEFAULT_HEIGHT,
                 head_size: float = config.HEAD_SIZE) -> float:
    """Pixel extent of a head of ``head_size`` cm at image position ``pos`` and ``height``."""
    c = extr.get_3d_point(pos, height)
    half = head_size / 2.0
    px1 = extr.get_image_point(Vec3F(c.x + half, c.y, c.z))
    px2 = extr.get_image_point(Vec3F(c.x - half, c.y, c.z))
    py1 = extr.get_image_point(Vec3F(c.x, c.y + half, c.z))
    py2 = extr.get_image_point(Vec3F(c.x, c.y - half, c.z))
    return max(px1.distance_to(px2), py1.distance_to(py2))


def win_size(head_size: float, level: int = 0, region_scale: int = config.TRACK_REGION_SCALE) -> int:
    return int(head_size / 2 ** level * region_scale / 10.0)


def height_from_head_size(extr: ExtrinsicCalibration, pos, head_px: float,
                          head_size: float = config.HEAD_SIZE) -> Optional[float]:
    """
    Height (world Z) of a head that appears ``head_px`` wide at ``pos``: the
    distance along the viewing ray follows from the focal length.
    """
    if head_px is None or head_px <= 0:
        return None
    f = 0.5 * (extr.intrinsic.fx + extr.intrinsic.fy)
    C, d = extr.viewing_ray(pos)
    dist = f * head_size / head_px
    return float((C + dist * d)[2])

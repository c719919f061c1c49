"""
Marker recognition.

All recognizers share the same interface: ``recognize(img, roi, context)``
returns a list of TrackPoints (pixel coordinates of the full image) and never
touches the person storage. "Nothing found" is an empty list.

    COLOR       single coloured hat (HSV range)
    CODE        ArUco code marker, gives id and view direction
    MULTICOLOR  several hat colours, optional dark dot for the head direction
    STEREO      markerless, local maxima of the stereo height map
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy import ndimage

from . import config
from .errors import RecognitionConfigError
from .track_person import PointSource, TrackPoint
from .utils import roi_view
from .vector import Vec2F, Vec3F


class RecognitionMethod(Enum):
    COLOR = "COLOR"
    CODE = "CODE"
    MULTICOLOR = "MULTICOLOR"
    STEREO = "STEREO"


@dataclass
class RecognitionContext:
    frame: int = 0
    foreground: Optional[np.ndarray] = None     # mask from the background filter
    stereo: Optional[object] = None             # StereoContext
    head_size_px: float = config.DEFAULT_HEAD_PX


# ===============================
# Shared front end
# ===============================
@dataclass
class ColorRange:
    """HSV range in OpenCV units (H 0..179). ``h_min > h_max`` wraps around red."""
    h_min: int
    h_max: int
    s_min: int = 80
    s_max: int = 255
    v_min: int = 80
    v_max: int = 255

    def __post_init__(self):
        for name, lo, hi, top in (("h", self.h_min, self.h_max, 179),
                                  ("s", self.s_min, self.s_max, 255),
                                  ("v", self.v_min, self.v_max, 255)):
            if not (0 <= lo <= top and 0 <= hi <= top):
                raise RecognitionConfigError(f"{name} range [{lo}, {hi}] outside 0..{top}")
            if name != "h" and lo > hi:
                raise RecognitionConfigError(f"{name} range [{lo}, {hi}] is empty")

    def to_dict(self) -> dict:
        return dict(h_min=self.h_min, h_max=self.h_max, s_min=self.s_min,
                    s_max=self.s_max, v_min=self.v_min, v_max=self.v_max)


def hsv_mask(hsv: np.ndarray, rng: ColorRange) -> np.ndarray:
    if rng.h_min <= rng.h_max:
        return cv2.inRange(hsv, (rng.h_min, rng.s_min, rng.v_min), (rng.h_max, rng.s_max, rng.v_max))
    low = cv2.inRange(hsv, (0, rng.s_min, rng.v_min), (rng.h_max, rng.s_max, rng.v_max))
    high = cv2.inRange(hsv, (rng.h_min, rng.s_min, rng.v_min), (179, rng.s_max, rng.v_max))
    return cv2.bitwise_or(low, high)


def clean_mask(mask: np.ndarray, kernel: int = config.MORPH_KERNEL) -> np.ndarray:
    if kernel <= 1:
        return mask
    k = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (kernel, kernel))
    mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, k)
    return cv2.morphologyEx(mask, cv2.MORPH_CLOSE, k)


@dataclass
class Blob:
    center: Vec2F
    area: float
    diameter: float
    fill: float                 # contour area / enclosing circle area
    bbox: Tuple[int, int, int, int]
    color: Tuple[int, int, int]
    contour: np.ndarray = field(repr=False, default=None)


def find_blobs(mask: np.ndarray, img: Optional[np.ndarray] = None,
               min_area: float = config.MIN_BLOB_AREA, max_area: float = config.MAX_BLOB_AREA) -> List[Blob]:
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    blobs = []
    for c in contours:
        area = float(cv2.contourArea(c))
        if area < min_area or area > max_area:
            continue
        m = cv2.moments(c)
        if m["m00"] <= 0:
            continue
        center = Vec2F(m["m10"] / m["m00"], m["m01"] / m["m00"])
        _, radius = cv2.minEnclosingCircle(c)
        fill = area / (np.pi * radius * radius) if radius > 0 else 0.0
        color = (0, 0, 0)
        if img is not None and img.ndim == 3:
            blob_mask = np.zeros(mask.shape, np.uint8)
            cv2.drawContours(blob_mask, [c], -1, 255, -1)
            b, g, r = cv2.mean(img, mask=blob_mask)[:3]
            color = (int(round(r)), int(round(g)), int(round(b)))
        blobs.append(Blob(center, area, 2.0 * radius, min(fill, 1.0), cv2.boundingRect(c), color, c))
    return blobs


def on_foreground(blob: Blob, foreground: Optional[np.ndarray], threshold: float = config.FG_THRESHOLD) -> bool:
    if foreground is None:
        return True
    x, y, w, h = blob.bbox
    region = foreground[y:y + h, x:x + w]
    if region.size == 0:
        return False
    return (region > 0).sum() / region.size > threshold


# ===============================
# Recognizers
# ===============================
class Recognizer(ABC):
    method: RecognitionMethod

    @abstractmethod
    def recognize(self, img: np.ndarray, roi=None, context: Optional[RecognitionContext] = None) -> List[TrackPoint]:
        pass

    def get_settings(self) -> dict:
        return {}

    def set_settings(self, settings: dict):
        pass


class ColorBlobRecognizer(Recognizer):
    method = RecognitionMethod.COLOR

    def __init__(self, color_range: Optional[ColorRange] = None,
                 min_area: float = config.MIN_BLOB_AREA, max_area: float = config.MAX_BLOB_AREA,
                 kernel: int = config.MORPH_KERNEL):
        self.color_range = color_range or ColorRange(0, 10)
        self.min_area = min_area
        self.max_area = max_area
        self.kernel = kernel

    def recognize(self, img, roi=None, context=None) -> List[TrackPoint]:
        context = context or RecognitionContext()
        sub, (ox, oy, w, h) = roi_view(img, roi)
        if w == 0 or h == 0:
            return []
        hsv = cv2.cvtColor(sub, cv2.COLOR_BGR2HSV)
        mask = clean_mask(hsv_mask(hsv, self.color_range), self.kernel)
        fg = None if context.foreground is None else context.foreground[oy:oy + h, ox:ox + w]
        points = []
        for blob in find_blobs(mask, sub, self.min_area, self.max_area):
            if not on_foreground(blob, fg):
                continue
            quality = int(round(blob.fill * config.MAX_QUALITY))
            points.append(TrackPoint(blob.center + (ox, oy), quality, PointSource.RECOGNIZED,
                                     color=blob.color, head_px=blob.diameter))
        return points

    def get_settings(self) -> dict:
        return {"color_range": self.color_range.to_dict(), "min_area": self.min_area,
                "max_area": self.max_area, "kernel": self.kernel}

    def set_settings(self, settings: dict):
        if "color_range" in settings:
            self.color_range = ColorRange(**settings["color_range"])
        self.min_area = settings.get("min_area", self.min_area)
        self.max_area = settings.get("max_area", self.max_area)
        self.kernel = settings.get("kernel", self.kernel)


class CodeMarkerRecognizer(Recognizer):
    method = RecognitionMethod.CODE

    def __init__(self, dictionary: str = config.ARUCO_DICT, ids: Optional[Sequence[int]] = None):
        self.dictionary = dictionary
        self.ids = None if ids is None else set(int(i) for i in ids)
        self._detector = self._make_detector(dictionary)

    @staticmethod
    def _make_detector(name: str):
        dict_id = getattr(cv2.aruco, name, None)
        if not name.startswith("DICT_") or dict_id is None:
            raise RecognitionConfigError(f"unknown ArUco dictionary: {name}")
        aruco_dict = cv2.aruco.getPredefinedDictionary(dict_id)
        params = cv2.aruco.DetectorParameters()
        return cv2.aruco.ArucoDetector(aruco_dict, params)

    def recognize(self, img, roi=None, context=None) -> List[TrackPoint]:
        sub, (ox, oy, w, h) = roi_view(img, roi)
        if w == 0 or h == 0:
            return []
        gray = sub if sub.ndim == 2 else cv2.cvtColor(sub, cv2.COLOR_BGR2GRAY)
        corners, ids, _ = self._detector.detectMarkers(gray)
        if ids is None:
            return []
        points = []
        for c, marker_id in zip(corners, ids.reshape(-1)):
            if self.ids is not None and int(marker_id) not in self.ids:
                continue
            c = c.reshape(4, 2).astype(float)
            center = Vec2F.from_array(c.mean(axis=0))
            top = Vec2F.from_array((c[0] + c[1]) / 2.0)
            side = max(np.linalg.norm(c[0] - c[1]), np.linalg.norm(c[1] - c[2]))
            points.append(TrackPoint(center + (ox, oy), config.MAX_QUALITY, PointSource.RECOGNIZED,
                                     orient=(top - center).unit(), marker_id=int(marker_id),
                                     head_px=float(side)))
        return points

    def get_settings(self) -> dict:
        return {"dictionary": self.dictionary, "ids": None if self.ids is None else sorted(self.ids)}

    def set_settings(self, settings: dict):
        if settings.get("dictionary", self.dictionary) != self.dictionary:
            self._detector = self._make_detector(settings["dictionary"])
            self.dictionary = settings["dictionary"]
        if "ids" in settings:
            self.ids = None if settings["ids"] is None else set(int(i) for i in settings["ids"])


class MultiColorRecognizer(Recognizer):
    """
    Hats of several colours; a dark dot on the hat marks the front of the head.
    With a dot the point sits on the dot and carries the hat -> dot direction.
    """
    method = RecognitionMethod.MULTICOLOR

    def __init__(self, color_ranges: Optional[Sequence[ColorRange]] = None, use_dot: bool = True,
                 dot_max_value: int = config.DOT_MAX_VALUE,
                 min_area: float = config.MIN_BLOB_AREA, max_area: float = config.MAX_BLOB_AREA,
                 kernel: int = config.MORPH_KERNEL):
        self.color_ranges = list(color_ranges) if color_ranges else [ColorRange(0, 10), ColorRange(50, 70),
                                                                     ColorRange(100, 130)]
        self.use_dot = use_dot
        self.dot_max_value = dot_max_value
        self.min_area = min_area
        self.max_area = max_area
        self.kernel = kernel

    def _find_dot(self, hsv: np.ndarray, blob: Blob) -> Optional[Vec2F]:
        x, y, w, h = blob.bbox
        hat = np.zeros(hsv.shape[:2], np.uint8)
        cv2.drawContours(hat, [cv2.convexHull(blob.contour)], -1, 255, -1)
        dark = cv2.inRange(hsv, (0, 0, 0), (179, 255, self.dot_max_value))
        dot = cv2.bitwise_and(dark, hat)[y:y + h, x:x + w]
        n, _, stats, centroids = cv2.connectedComponentsWithStats(dot)
        if n <= 1:
            return None
        best = 1 + int(np.argmax(stats[1:, cv2.CC_STAT_AREA]))
        if stats[best, cv2.CC_STAT_AREA] < 2:
            return None
        return Vec2F(centroids[best][0] + x, centroids[best][1] + y)

    def recognize(self, img, roi=None, context=None) -> List[TrackPoint]:
        context = context or RecognitionContext()
        sub, (ox, oy, w, h) = roi_view(img, roi)
        if w == 0 or h == 0:
            return []
        hsv = cv2.cvtColor(sub, cv2.COLOR_BGR2HSV)
        fg = None if context.foreground is None else context.foreground[oy:oy + h, ox:ox + w]
        points = []
        for rng in self.color_ranges:
            mask = hsv_mask(hsv, rng)
            if self.use_dot:
                # close dark holes of the dot so the hat stays one blob
                k = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3))
                filled = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, k, iterations=3)
                contours, _ = cv2.findContours(filled, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
                mask = np.zeros_like(filled)
                cv2.drawContours(mask, contours, -1, 255, -1)
            mask = clean_mask(mask, self.kernel)
            for blob in find_blobs(mask, sub, self.min_area, self.max_area):
                if not on_foreground(blob, fg):
                    continue
                dot = self._find_dot(hsv, blob) if self.use_dot else None
                if dot is not None:
                    point = TrackPoint(dot + (ox, oy), config.MAX_QUALITY, PointSource.RECOGNIZED,
                                       color=blob.color, orient=(dot - blob.center).unit(),
                                       head_px=blob.diameter)
                else:
                    point = TrackPoint(blob.center + (ox, oy), config.MULTICOLOR_NO_DOT_QUALITY,
                                       PointSource.RECOGNIZED, color=blob.color, head_px=blob.diameter)
                points.append(point)
        return points

    def get_settings(self) -> dict:
        return {"color_ranges": [r.to_dict() for r in self.color_ranges], "use_dot": self.use_dot,
                "dot_max_value": self.dot_max_value, "min_area": self.min_area,
                "max_area": self.max_area, "kernel": self.kernel}

    def set_settings(self, settings: dict):
        if "color_ranges" in settings:
            self.color_ranges = [ColorRange(**r) for r in settings["color_ranges"]]
        for key in ("use_dot", "dot_max_value", "min_area", "max_area", "kernel"):
            if key in settings:
                setattr(self, key, settings[key])


class StereoRecognizer(Recognizer):
    """Heads as local maxima of the height map, within a plausible height band."""
    method = RecognitionMethod.STEREO

    def __init__(self, min_height: float = config.MIN_HEIGHT + 80.0, max_height: float = config.MAX_HEIGHT):
        self.min_height = min_height
        self.max_height = max_height

    def recognize(self, img, roi=None, context=None) -> List[TrackPoint]:
        if context is None or context.stereo is None:
            return []
        heights = context.stereo.height_map()
        if heights is None:
            return []
        sub, (ox, oy, w, h) = roi_view(heights, roi)
        if w == 0 or h == 0:
            return []
        valid = np.isfinite(sub) & (sub >= self.min_height) & (sub <= self.max_height)
        if not valid.any():
            return []
        filled = np.where(valid, sub, -np.inf)
        size = max(3, int(context.head_size_px) | 1)
        peaks = (filled == ndimage.maximum_filter(filled, size=size, mode="constant", cval=-np.inf)) & valid
        ys, xs = np.nonzero(peaks)
        order = np.argsort(-sub[ys, xs], kind="stable")
        kept: List[Tuple[int, int]] = []
        for k in order:
            x, y = int(xs[k]), int(ys[k])
            # plateaus yield several maxima, keep one per head
            if all((x - kx) ** 2 + (y - ky) ** 2 >= (size / 2.0) ** 2 for kx, ky in kept):
                kept.append((x, y))
        points = []
        for x, y in kept:
            pos = Vec2F(float(x + ox), float(y + oy))
            sp = context.stereo.world_point(pos)
            if sp is None:
                continue
            points.append(TrackPoint(pos, config.MAX_QUALITY, PointSource.RECOGNIZED, sp=Vec3F(*sp)))
        return points

    def get_settings(self) -> dict:
        return {"min_height": self.min_height, "max_height": self.max_height}

    def set_settings(self, settings: dict):
        self.min_height = settings.get("min_height", self.min_height)
        self.max_height = settings.get("max_height", self.max_height)


RECOGNIZERS: Dict[RecognitionMethod, type] = {
    RecognitionMethod.COLOR: ColorBlobRecognizer,
    RecognitionMethod.CODE: CodeMarkerRecognizer,
    RecognitionMethod.MULTICOLOR: MultiColorRecognizer,
    RecognitionMethod.STEREO: StereoRecognizer,
}


def create_recognizer(method, **options) -> Recognizer:
    try:
        method = RecognitionMethod(method)
    except ValueError:
        raise RecognitionConfigError(f"unknown recognition method: {method}") from None
    return RECOGNIZERS[method](**options)

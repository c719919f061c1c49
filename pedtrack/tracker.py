"""
Frame-to-frame tracker.

Each trajectory is followed by matching a head-sized template taken around its
last known point against the current frame. Matching runs coarse to fine over
an image pyramid; the correlation (TM_CCOEFF_NORMED) of the final level gives
the quality of the tracked point. The tracker only proposes points, the
pipeline commits them to the storage.
"""

import math
import weakref
from dataclasses import dataclass
from typing import Callable, Collection, List, Optional, Tuple

import cv2
import numpy as np

from . import config
from .calibration import win_size
from .track_person import PointSource, TrackPerson, TrackPoint
from .utils import in_roi, to_gray
from .vector import Vec2F


@dataclass
class TrackProposal:
    person: TrackPerson
    frame: int
    point: TrackPoint


def extract_template(gray: np.ndarray, pos, half: int) -> Optional[np.ndarray]:
    """Square patch of side 2*half+1 centred on ``pos``; None if it leaves the image or is flat."""
    cx, cy = int(round(pos[0])), int(round(pos[1]))
    h, w = gray.shape[:2]
    if cx - half < 0 or cy - half < 0 or cx + half >= w or cy + half >= h:
        return None
    patch = gray[cy - half:cy + half + 1, cx - half:cx + half + 1].copy()
    if float(patch.std()) < 1e-3:
        return None
    return patch


def _subpixel(res: np.ndarray, x: int, y: int) -> Tuple[float, float]:
    """Parabola fit through the correlation peak and its neighbours."""
    dx = dy = 0.0
    if 0 < x < res.shape[1] - 1:
        l, c, r = res[y, x - 1], res[y, x], res[y, x + 1]
        denom = l - 2 * c + r
        if abs(denom) > 1e-9:
            dx = float(np.clip(0.5 * (l - r) / denom, -0.5, 0.5))
    if 0 < y < res.shape[0] - 1:
        t, c, b = res[y - 1, x], res[y, x], res[y + 1, x]
        denom = t - 2 * c + b
        if abs(denom) > 1e-9:
            dy = float(np.clip(0.5 * (t - b) / denom, -0.5, 0.5))
    return dx, dy


def match_template_pyramid(gray: np.ndarray, template: np.ndarray, center, radius: float,
                           levels: int = config.TRACK_REGION_LEVELS,
                           refine: int = config.TRACK_REFINE_RADIUS) -> Tuple[Optional[Vec2F], int]:
    """
    Searches ``template`` within ``radius`` px around ``center``.
    Returns (displacement of the template centre, quality 0..100) or (None, 0).
    """
    th, tw = template.shape[:2]
    r = max(1, int(math.ceil(radius)))
    cx, cy = int(round(center[0])), int(round(center[1]))
    x0, y0 = cx - tw // 2 - r, cy - th // 2 - r
    x1, y1 = x0 + tw + 2 * r, y0 + th + 2 * r
    h, w = gray.shape[:2]
    x0c, y0c, x1c, y1c = max(x0, 0), max(y0, 0), min(x1, w), min(y1, h)
    if x1c - x0c < tw or y1c - y0c < th:
        return None, 0
    window = gray[y0c:y1c, x0c:x1c]
    if float(window.std()) < 1e-6:
        return None, 0

    level = 0
    while level < levels and min(th, tw) >> (level + 1) >= 2 * config.MIN_TEMPLATE_HALF:
        level += 1
    win_pyr, tpl_pyr = [window], [template]
    for _ in range(level):
        win_pyr.append(cv2.pyrDown(win_pyr[-1]))
        tpl_pyr.append(cv2.pyrDown(tpl_pyr[-1]))

    res = cv2.matchTemplate(win_pyr[level], tpl_pyr[level], cv2.TM_CCOEFF_NORMED)
    _, _, _, (bx, by) = cv2.minMaxLoc(res)
    sub_off = (0, 0)
    for lvl in range(level - 1, -1, -1):
        wl, tl = win_pyr[lvl], tpl_pyr[lvl]
        max_x, max_y = wl.shape[1] - tl.shape[1], wl.shape[0] - tl.shape[0]
        gx, gy = min(max(2 * bx, 0), max_x), min(max(2 * by, 0), max_y)
        sx0, sy0 = max(gx - refine, 0), max(gy - refine, 0)
        sx1, sy1 = min(gx + refine, max_x), min(gy + refine, max_y)
        sub = wl[sy0:sy1 + tl.shape[0], sx0:sx1 + tl.shape[1]]
        res = cv2.matchTemplate(sub, tl, cv2.TM_CCOEFF_NORMED)
        _, _, _, (lx, ly) = cv2.minMaxLoc(res)
        bx, by = sx0 + lx, sy0 + ly
        sub_off = (sx0, sy0)

    rx, ry = bx - sub_off[0], by - sub_off[1]
    score = float(res[ry, rx])
    if not np.isfinite(score):
        return None, 0
    fx, fy = _subpixel(res, rx, ry)
    dx = x0c + bx + tw // 2 + fx - cx
    dy = y0c + by + th // 2 + fy - cy
    quality = int(round(min(max(score, 0.0), 1.0) * config.MAX_QUALITY))
    return Vec2F(dx, dy), quality


class Tracker:
    def __init__(self, verbose: bool = config.VERBOSE):
        self.verbose = verbose
        self._prev_gray: Optional[np.ndarray] = None
        self._prev_frame: Optional[int] = None
        # person -> (frame, template) for bridging frames where tracking failed
        self._templates = weakref.WeakKeyDictionary()

    def reset(self):
        self._prev_gray = None
        self._prev_frame = None
        self._templates.clear()

    def resize(self, size: Tuple[int, int]):
        """Called when the frame size (width, height) changes, e.g. after a new border."""
        if self._prev_gray is not None and self._prev_gray.shape[:2] != (size[1], size[0]):
            self.reset()

    @property
    def prev_frame(self) -> Optional[int]:
        return self._prev_frame

    def track(self, img: np.ndarray, storage, frame: int,
              roi=None,
              repeat: bool = config.TRACK_REPEAT,
              repeat_qual: int = config.TRACK_REPEAT_QUAL,
              levels: int = config.TRACK_REGION_LEVELS,
              region_scale: int = config.TRACK_REGION_SCALE,
              max_gap: int = config.TRACK_MAX_GAP,
              to_track: Collection[int] = (),
              head_size_fn: Optional[Callable[[Vec2F, int], float]] = None) -> List[TrackProposal]:
        """
        Proposes points at ``frame`` for trajectories without a point there.
        Only works when the previous call was for a neighbouring frame; the
        direction (forward/backward) follows from the frame numbers.
        """
        gray = to_gray(img)
        proposals: List[TrackProposal] = []
        if self._prev_frame is not None and abs(frame - self._prev_frame) == 1 \
                and self._prev_gray is not None and self._prev_gray.shape == gray.shape:
            direction = frame - self._prev_frame
            for i, person in enumerate(storage):
                if to_track and i not in to_track:
                    continue
                if frame in person:
                    continue
                proposal = self._track_person(person, gray, frame, direction, roi, repeat, repeat_qual,
                                              levels, region_scale, max_gap, head_size_fn)
                if proposal is not None:
                    proposals.append(proposal)
        self._prev_gray = gray
        self._prev_frame = frame
        if self.verbose and proposals:
            print(f"[DEBUG] Frame {frame}: tracked {len(proposals)} persons.")
        return proposals

    def _track_person(self, person, gray, frame, direction, roi, repeat, repeat_qual,
                      levels, region_scale, max_gap, head_size_fn) -> Optional[TrackProposal]:
        if direction > 0:
            ref = person.point_before(frame, max_gap)
        else:
            ref = person.point_after(frame, max_gap)
        if ref is None:
            return None
        ref_frame, ref_point = ref
        if not in_roi(ref_point.pos, roi):
            return None

        head = config.DEFAULT_HEAD_PX
        if head_size_fn is not None:
            head = head_size_fn(ref_point.pos, ref_frame) or head
        half = max(config.MIN_TEMPLATE_HALF, int(round(head / 2.0)))

        if ref_frame == self._prev_frame:
            template = extract_template(self._prev_gray, ref_point.pos, half)
            if template is not None:
                self._templates[person] = (ref_frame, template)
        else:
            cached = self._templates.get(person)
            template = cached[1] if cached is not None and cached[0] == ref_frame else None
        if template is None:
            return None

        gap = abs(frame - ref_frame)
        radius = win_size(head, 0, region_scale) / 2.0 * gap
        shift, quality = match_template_pyramid(gray, template, ref_point.pos, radius, levels)
        if quality < repeat_qual and repeat:
            shift2, quality2 = match_template_pyramid(gray, template, ref_point.pos, radius * 2, levels + 1)
            if quality2 > quality:
                shift, quality = shift2, quality2
        if shift is None or quality < repeat_qual:
            return None
        pos = ref_point.pos + shift
        if not in_roi(pos, roi):
            return None
        point = TrackPoint(pos, quality, PointSource.TRACKED, color=ref_point.color,
                           marker_id=ref_point.marker_id, head_px=ref_point.head_px)
        return TrackProposal(person, frame, point)

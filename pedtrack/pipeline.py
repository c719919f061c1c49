"""
Per-frame processing: filter chain -> tracking -> recognition -> storage.

Tracking runs before recognition so that freshly recognized points can replace
tracked ones at the same frame. Nothing is written to the PersonStorage before
the commit step at the end of a frame, so an exception anywhere in the frame
leaves the trajectories as they were.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Collection, Dict, Optional

import numpy as np
from tqdm import tqdm

from . import config
from .calibration import ExtrinsicCalibration, head_size_px
from .config import TrackingSettings
from .errors import CalibrationError
from .filters import FilterChain
from .person_storage import PersonStorage
from .recognition import RecognitionContext, RecognitionMethod, Recognizer, create_recognizer
from .sources import FrameSource
from .stereo import StereoContext
from .tracker import Tracker
from .vector import Vec2F


@dataclass
class FrameResult:
    frame: int
    tracked: int
    recognized: int
    persons: int
    visible: int


@dataclass
class BatchResult:
    processed: int
    cancelled: bool
    unreadable: int = 0


class FramePipeline:
    def __init__(self, storage: Optional[PersonStorage] = None,
                 filters: Optional[FilterChain] = None,
                 tracker: Optional[Tracker] = None,
                 extr: Optional[ExtrinsicCalibration] = None,
                 settings: Optional[TrackingSettings] = None,
                 stereo: Optional[StereoContext] = None,
                 recognizers: Optional[Dict[RecognitionMethod, Recognizer]] = None,
                 verbose: bool = config.VERBOSE):
        self.storage = storage if storage is not None else PersonStorage(verbose=verbose)
        self.filters = filters or FilterChain()
        self.tracker = tracker or Tracker(verbose=False)
        self.extr = extr
        self.settings = settings or TrackingSettings()
        self.stereo = stereo
        self.recognizers: Dict[RecognitionMethod, Recognizer] = dict(recognizers or {})
        self.verbose = verbose
        self.to_track: Collection[int] = ()     # empty: all persons
        self.track_changed = True
        self.recognition_changed = True
        self._lock = threading.Lock()
        self._last_key = None
        self._calib_version = self.filters.calib.key()
        self._warned_uncalibrated = False
        self.storage.distance_fn = self.merge_distance

    # ===============================
    # Configuration
    # ===============================
    @property
    def method(self) -> RecognitionMethod:
        return RecognitionMethod(self.settings.recognition_method)

    @property
    def recognizer(self) -> Recognizer:
        method = self.method
        if method not in self.recognizers:
            self.recognizers[method] = create_recognizer(method)
        return self.recognizers[method]

    def set_recognizer(self, recognizer: Recognizer, activate: bool = True):
        self.recognizers[recognizer.method] = recognizer
        if activate:
            self.settings.recognition_method = recognizer.method.value
        self.recognition_changed = True

    def mark_track_changed(self):
        self.track_changed = True

    def mark_recognition_changed(self):
        self.recognition_changed = True

    def get_settings(self) -> dict:
        return {
            "tracking": self.settings.to_dict(),
            "filters": self.filters.get_settings(),
            "recognizers": {m.value: r.get_settings() for m, r in self.recognizers.items()},
        }

    def set_settings(self, data: dict):
        if "tracking" in data:
            self.settings = TrackingSettings.from_dict(data["tracking"])
        if "filters" in data:
            self.filters.set_settings(data["filters"])
        for name, values in data.get("recognizers", {}).items():
            method = RecognitionMethod(name)
            if method not in self.recognizers:
                self.recognizers[method] = create_recognizer(method)
            self.recognizers[method].set_settings(values)
        self.track_changed = True
        self.recognition_changed = True

    # ===============================
    # Head size
    # ===============================
    def head_size(self, pos: Vec2F, frame: int = 0) -> float:
        if self.extr is None or not self.extr.is_calibrated:
            if not self._warned_uncalibrated:
                print(f"[WARNING] No extrinsic calibration, using a head size of {config.DEFAULT_HEAD_PX} px.")
                self._warned_uncalibrated = True
            return config.DEFAULT_HEAD_PX
        border = self.filters.border_size
        try:
            return head_size_px(self.extr, pos - (border, border), self.settings.default_height)
        except CalibrationError:
            return config.DEFAULT_HEAD_PX

    def merge_distance(self, pos: Vec2F, frame: int) -> float:
        return self.head_size(pos, frame) / 2.0

    # ===============================
    # Single frame
    # ===============================
    def process_frame(self, img: np.ndarray, frame: int, image_changed: bool = True,
                      right: Optional[np.ndarray] = None, image_key=None) -> Optional[FrameResult]:
        """
        Processes one frame. A call made while another frame is still being
        processed is dropped and returns None.
        """
        if not self._lock.acquire(blocking=False):
            if self.verbose:
                print(f"[DEBUG] Frame {frame} dropped, previous frame still in progress.")
            return None
        try:
            return self._process(img, frame, image_changed, right, image_key)
        finally:
            self._lock.release()

    def _process(self, img, frame, image_changed, right, image_key) -> FrameResult:
        s = self.settings
        if not image_changed and self._last_key is not None:
            key = self._last_key
        else:
            key = image_key
        filtered = self.filters.apply(img, key)
        self._last_key = self.filters.last_key
        filters_changed = bool(self.filters.last_changed)
        self.tracker.resize((filtered.shape[1], filtered.shape[0]))

        calib_version = self.filters.calib.key()
        if calib_version != self._calib_version:
            self._calib_version = calib_version
            if len(self.storage):
                print("[WARNING] Undistortion changed; stored pixel positions refer to the previous calibration.")

        stereo_ready = self.stereo is not None and right is not None
        if stereo_ready:
            self.stereo.init(filtered, self.filters.apply_geometry(right))

        proposals = []
        if s.online_tracking and (filters_changed or self.track_changed):
            proposals = self.tracker.track(
                filtered, self.storage, frame,
                roi=s.track_roi,
                repeat=s.track_repeat,
                repeat_qual=s.track_repeat_qual,
                levels=s.track_region_levels,
                region_scale=s.track_region_scale,
                max_gap=s.track_max_gap,
                to_track=self.to_track,
                head_size_fn=self.head_size,
            )

        candidates = []
        step = max(int(s.reco_step), 1)
        if s.perform_recognition and frame % step == 0 and (filters_changed or self.recognition_changed):
            head = self.head_size(Vec2F(filtered.shape[1] / 2.0, filtered.shape[0] / 2.0), frame)
            context = RecognitionContext(frame, self.filters.foreground, self.stereo, head)
            candidates = self.recognizer.recognize(filtered, s.reco_roi, context)
            if self.stereo is not None:
                for c in candidates:
                    if c.sp is None:
                        c.sp = self.stereo.world_point(c.pos)

        # commit
        tracked = sum(1 for p in proposals if self.storage.commit_tracked(p.person, p.frame, p.point))
        if candidates:
            self.storage.add_points(candidates, frame, self.method.value)
        if stereo_ready:
            self.storage.calc_position(frame, self.stereo)
        if s.stereo_recognition and self.stereo is not None:
            self.storage.purge(frame)

        self.track_changed = False
        self.recognition_changed = False
        return FrameResult(frame, tracked, len(candidates), len(self.storage), self.storage.visible(frame))

    # ===============================
    # Batch loops
    # ===============================
    def _run_source_frame(self, source: FrameSource, frame: int) -> bool:
        img = source.get_frame(frame)
        if img is None:
            print(f"[WARNING] Frame {frame} could not be read, tracking chain interrupted.")
            self.tracker.reset()
            return False
        right = source.get_stereo_frame(frame) if self.stereo is not None else None
        self.process_frame(img, frame, right=right, image_key=(id(source), frame))
        return True

    def _loop(self, source, frames, cancel, pbar) -> BatchResult:
        result = BatchResult(0, False)
        for frame in frames:
            if cancel is not None and cancel():
                result.cancelled = True
                print(f"[INFO] Cancelled before frame {frame}.")
                break
            if self._run_source_frame(source, frame):
                result.processed += 1
            else:
                result.unreadable += 1
            pbar.update(1)
        return result

    def track_all(self, source: FrameSource, start: int = 0,
                  cancel: Optional[Callable[[], bool]] = None,
                  auto_back_track: Optional[bool] = None,
                  progress: bool = True) -> BatchResult:
        """
        Tracks forward from ``start`` to the end of the sequence. Afterwards
        trajectories that were recognized late are tracked backwards, starting
        at the largest first frame (+ offset) with recognition switched off.
        The forward pass always recognizes; multi-color trajectories get their
        colour signature optimized at the end.
        ``cancel`` is polled before every frame.
        """
        s = self.settings
        back = s.auto_back_track if auto_back_track is None else auto_back_track
        n = source.num_frames
        saved = (s.online_tracking, s.perform_recognition)
        s.online_tracking = True
        s.perform_recognition = True
        self.tracker.reset()
        pbar = tqdm(total=max(n - start, 0), desc="Tracking", disable=not progress)
        try:
            result = self._loop(source, range(start, n), cancel, pbar)
            if back and not result.cancelled and len(self.storage):
                begin = min(self.storage.largest_first_frame() + config.BACK_TRACK_OFFSET, n - 1)
                if begin > start:
                    if self.verbose:
                        print(f"[INFO] Tracking backwards from frame {begin} to {start}.")
                    s.perform_recognition = False
                    self.tracker.reset()
                    self.track_changed = True
                    pbar.reset(total=begin - start + 1)
                    pbar.set_description("Back tracking")
                    back_result = self._loop(source, range(begin, start - 1, -1), cancel, pbar)
                    result = BatchResult(result.processed + back_result.processed, back_result.cancelled,
                                         result.unreadable + back_result.unreadable)
        finally:
            s.online_tracking, s.perform_recognition = saved
            pbar.close()
            self.tracker.reset()
        if self.method == RecognitionMethod.MULTICOLOR:
            self.storage.optimize_color()
        if self.verbose:
            print(f"[INFO] Tracked {result.processed} frames, {len(self.storage)} persons, "
                  f"{self.storage.total_points()} points.")
        return result

    def play_all(self, source: FrameSource, start: int = 0,
                 cancel: Optional[Callable[[], bool]] = None, progress: bool = True) -> BatchResult:
        """Runs every frame once with the current settings."""
        n = source.num_frames
        pbar = tqdm(total=max(n - start, 0), desc="Processing", disable=not progress)
        try:
            return self._loop(source, range(start, n), cancel, pbar)
        finally:
            pbar.close()

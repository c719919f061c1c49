"""
Bookkeeping of frames that were never decoded from the video.

An entry (video_frame, count) says that ``count`` nominal frames are missing
right before ``video_frame``. Exported frame numbers are nominal, so time
stamps stay correct across dropped frames.
"""

import bisect
from dataclasses import dataclass
from typing import Iterable, List, Sequence

import numpy as np

from . import config


@dataclass(frozen=True, order=True)
class MissingFrame:
    frame: int
    count: int


class MissingFrames:
    def __init__(self, entries: Iterable[MissingFrame] = ()):
        self._entries: List[MissingFrame] = []
        for e in entries:
            self.add(e.frame, e.count)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    @property
    def entries(self) -> List[MissingFrame]:
        return list(self._entries)

    def clear(self):
        self._entries.clear()

    def add(self, frame: int, count: int = 1):
        """Records ``count`` missing frames before ``frame``; an existing entry is replaced."""
        if count < 0:
            raise ValueError(f"negative missing frame count {count} at frame {frame}")
        frames = [e.frame for e in self._entries]
        i = bisect.bisect_left(frames, frame)
        if i < len(frames) and frames[i] == frame:
            del self._entries[i]
        if count > 0:
            self._entries.insert(i, MissingFrame(int(frame), int(count)))

    def total(self) -> int:
        return sum(e.count for e in self._entries)

    def missing_before(self, video_frame: int) -> int:
        return sum(e.count for e in self._entries if e.frame <= video_frame)

    def nominal_frame(self, video_frame: int) -> int:
        return video_frame + self.missing_before(video_frame)

    def video_frame(self, nominal: int) -> int:
        """Inverse of ``nominal_frame``; -1 for a nominal frame that has no video frame."""
        offset = 0
        for e in self._entries:
            if nominal < e.frame + offset:
                break
            if nominal < e.frame + offset + e.count:
                return -1
            offset += e.count
        return nominal - offset

    @staticmethod
    def from_timestamps(timestamps: Sequence[float], fps: float = config.FPS_DEFAULT,
                        tolerance: float = 0.5, verbose: bool = config.VERBOSE) -> "MissingFrames":
        """
        Detects dropped frames from per-frame time stamps (seconds). A step
        larger than (1 + tolerance) frame durations marks the frames in between
        as missing.
        """
        missing = MissingFrames()
        ts = np.asarray(timestamps, dtype=float)
        if ts.size < 2 or fps <= 0:
            return missing
        steps = np.diff(ts) * fps
        for i, step in enumerate(steps):
            if step > 1.0 + tolerance:
                missing.add(i + 1, int(round(step)) - 1)
        if verbose and len(missing):
            print(f"[INFO] Detected {missing.total()} missing frames at {len(missing)} positions.")
        return missing

    def to_list(self) -> List[List[int]]:
        return [[e.frame, e.count] for e in self._entries]

    @staticmethod
    def from_list(data) -> "MissingFrames":
        return MissingFrames(MissingFrame(int(f), int(c)) for f, c in data)

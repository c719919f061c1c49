"""
Trajectory data model.

A TrackPerson owns at most one TrackPoint per frame. Frames may have gaps
(tracking misses are never interpolated here). When two points compete for the
same frame the one with higher priority wins: manual > recognized > tracked,
then higher quality within the same source.
"""

import bisect
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from . import config
from .vector import Vec2F, Vec3F


class PointSource(IntEnum):
    TRACKED = 0
    RECOGNIZED = 1
    MANUAL = 2


@dataclass
class TrackPoint:
    pos: Vec2F
    quality: int = config.MAX_QUALITY
    source: PointSource = PointSource.RECOGNIZED
    sp: Optional[Vec3F] = None          # real-world position in cm, set lazily
    color: Optional[Tuple[int, int, int]] = None
    orient: Optional[Vec2F] = None      # view direction in pixel space
    marker_id: int = -1
    head_px: Optional[float] = None     # apparent marker diameter

    def __post_init__(self):
        self.pos = Vec2F(float(self.pos[0]), float(self.pos[1]))
        self.source = PointSource(self.source)
        q = int(round(self.quality))
        if q > config.MAX_QUALITY:
            # legacy manual marker (quality 110)
            self.source = PointSource.MANUAL
            q = config.MAX_QUALITY
        self.quality = max(q, 0)
        if self.sp is not None and not isinstance(self.sp, Vec3F):
            self.sp = Vec3F(*self.sp)
        if self.orient is not None and not isinstance(self.orient, Vec2F):
            self.orient = Vec2F(*self.orient)

    @property
    def x(self) -> float:
        return self.pos.x

    @property
    def y(self) -> float:
        return self.pos.y

    def priority(self) -> Tuple[int, int]:
        return int(self.source), self.quality

    def beats(self, other: "TrackPoint") -> bool:
        """True if this point may replace ``other`` at the same frame."""
        if self.source == PointSource.MANUAL:
            return True
        return self.priority() > other.priority()

    def distance_to(self, other) -> float:
        p = other.pos if isinstance(other, TrackPoint) else other
        return self.pos.distance_to(p)

    def copy(self) -> "TrackPoint":
        return replace(self)


@dataclass(eq=False)
class TrackPerson:
    nr: int
    height: Optional[float] = None
    comment: str = ""
    color: Optional[Tuple[int, int, int]] = None
    marker_id: int = -1
    _points: Dict[int, TrackPoint] = field(default_factory=dict, repr=False)
    _frames: List[int] = field(default_factory=list, repr=False)

    @staticmethod
    def from_points(nr: int, points: Dict[int, TrackPoint], **kwargs) -> "TrackPerson":
        person = TrackPerson(nr=nr, **kwargs)
        for frame, point in points.items():
            person.set_point(frame, point)
        return person

    # ---- access ----
    def __len__(self) -> int:
        return len(self._frames)

    def __contains__(self, frame: int) -> bool:
        return frame in self._points

    def __iter__(self) -> Iterator[Tuple[int, TrackPoint]]:
        return self.items()

    def is_empty(self) -> bool:
        return not self._frames

    def items(self) -> Iterator[Tuple[int, TrackPoint]]:
        for frame in list(self._frames):
            yield frame, self._points[frame]

    def frames(self) -> List[int]:
        return list(self._frames)

    def at(self, frame: int) -> TrackPoint:
        return self._points[frame]

    def get(self, frame: int) -> Optional[TrackPoint]:
        return self._points.get(frame)

    @property
    def first_frame(self) -> int:
        if not self._frames:
            raise ValueError(f"person {self.nr} has no points")
        return self._frames[0]

    @property
    def last_frame(self) -> int:
        if not self._frames:
            raise ValueError(f"person {self.nr} has no points")
        return self._frames[-1]

    def has_gaps(self) -> bool:
        return bool(self._frames) and self.last_frame - self.first_frame + 1 != len(self._frames)

    def point_before(self, frame: int, max_gap: Optional[int] = None) -> Optional[Tuple[int, TrackPoint]]:
        """Newest point strictly before ``frame`` (within ``max_gap`` frames)."""
        i = bisect.bisect_left(self._frames, frame)
        if i == 0:
            return None
        f = self._frames[i - 1]
        if max_gap is not None and frame - f > max_gap:
            return None
        return f, self._points[f]

    def point_after(self, frame: int, max_gap: Optional[int] = None) -> Optional[Tuple[int, TrackPoint]]:
        i = bisect.bisect_right(self._frames, frame)
        if i >= len(self._frames):
            return None
        f = self._frames[i]
        if max_gap is not None and f - frame > max_gap:
            return None
        return f, self._points[f]

    def reference_point(self, frame: int) -> Optional[TrackPoint]:
        """Point at ``frame`` or, failing that, at a direct neighbour frame."""
        for f in (frame, frame - 1, frame + 1):
            p = self._points.get(f)
            if p is not None:
                return p
        return None

    # ---- mutation ----
    def set_point(self, frame: int, point: TrackPoint):
        frame = int(frame)
        if frame not in self._points:
            bisect.insort(self._frames, frame)
        self._points[frame] = point

    def insert(self, frame: int, point: TrackPoint) -> bool:
        """
        Stores ``point`` at ``frame`` if the frame is free or the point beats the
        existing one. Returns True if the point was stored.
        """
        existing = self._points.get(frame)
        if existing is not None and not point.beats(existing):
            if point.color is not None and existing.color is None:
                existing.color = point.color
            return False
        if existing is not None and existing.sp is not None and point.sp is None:
            point.sp = existing.sp
        self.set_point(frame, point)
        return True

    def remove(self, frame: int) -> bool:
        if frame not in self._points:
            return False
        del self._points[frame]
        self._frames.remove(frame)
        return True

    def remove_range(self, first: Optional[int] = None, last: Optional[int] = None) -> int:
        """Removes all points with first <= frame <= last. Returns the count removed."""
        lo = 0 if first is None else bisect.bisect_left(self._frames, first)
        hi = len(self._frames) if last is None else bisect.bisect_right(self._frames, last)
        doomed = self._frames[lo:hi]
        for f in doomed:
            del self._points[f]
        del self._frames[lo:hi]
        return len(doomed)

    def split_at(self, frame: int, nr: int) -> "TrackPerson":
        """Moves all points at or after ``frame`` into a new person."""
        tail = TrackPerson(nr=nr, height=self.height, color=self.color, marker_id=self.marker_id)
        i = bisect.bisect_left(self._frames, frame)
        for f in self._frames[i:]:
            tail.set_point(f, self._points.pop(f))
        del self._frames[i:]
        return tail

    def merge(self, other: "TrackPerson") -> int:
        """Joins the points of ``other``; conflicting frames keep the better point."""
        taken = 0
        for f, p in other.items():
            if self.insert(f, p):
                taken += 1
        if self.height is None:
            self.height = other.height
        if self.marker_id < 0:
            self.marker_id = other.marker_id
        if self.color is None:
            self.color = other.color
        if other.comment:
            self.comment = f"{self.comment}; {other.comment}" if self.comment else other.comment
        return taken

    def overlaps(self, other: "TrackPerson") -> bool:
        if self.is_empty() or other.is_empty():
            return False
        return self.first_frame <= other.last_frame and other.first_frame <= self.last_frame

    def shared_frames(self, other: "TrackPerson") -> List[int]:
        return sorted(set(self._points) & set(other._points))

    # ---- derived values ----
    def count_source(self, *sources: PointSource) -> int:
        return sum(1 for p in self._points.values() if p.source in sources)

    def recognized_ratio(self) -> float:
        if not self._frames:
            return 0.0
        return self.count_source(PointSource.RECOGNIZED, PointSource.MANUAL) / len(self._frames)

    def recalc_height(self, min_height: float = config.MIN_HEIGHT) -> Optional[float]:
        """Median of the stereo heights of all points, ignoring implausible values."""
        zs = [p.sp.z for p in self._points.values()
              if p.sp is not None and np.isfinite(p.sp.z) and p.sp.z > min_height]
        if zs:
            self.height = float(np.median(zs))
        return self.height

    def optimize_color(self) -> Optional[Tuple[int, int, int]]:
        """Sets the person colour to the most frequent point colour."""
        colors = [p.color for p in self._points.values() if p.color is not None]
        if colors:
            self.color = Counter(colors).most_common(1)[0][0]
        return self.color

    def copy(self) -> "TrackPerson":
        return TrackPerson.from_points(self.nr, {f: p.copy() for f, p in self.items()},
                                       height=self.height, comment=self.comment,
                                       color=self.color, marker_id=self.marker_id)

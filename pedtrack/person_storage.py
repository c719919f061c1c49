"""
PersonStorage: the set of all trajectories of a sequence.

Persons are addressed by their list index; ``TrackPerson.nr`` is index + 1
and is renumbered whenever a person is removed.
"""

from dataclasses import replace
from enum import IntEnum
from typing import Callable, Collection, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.distance import cdist

from . import config
from .errors import AmbiguousSelectionError
from .track_person import PointSource, TrackPerson, TrackPoint
from .utils import in_roi
from .vector import Vec2F, Vec3F


class Direction(IntEnum):
    PREVIOUS = -1   # frames up to and including the current one
    WHOLE = 0
    FOLLOWING = 1   # current frame and everything after


class PersonStorage:
    def __init__(self, max_distance: float = config.ADD_POINT_MAX_DIST, verbose: bool = config.VERBOSE):
        self._persons: List[TrackPerson] = []
        self.max_distance = max_distance
        # optional callable (pos, frame) -> px, usually the head size at that position
        self.distance_fn: Optional[Callable[[Vec2F, int], float]] = None
        self.verbose = verbose

    # =========
    # Accessors
    # =========
    def __len__(self) -> int:
        return len(self._persons)

    def __iter__(self):
        return iter(self._persons)

    def __getitem__(self, index: int) -> TrackPerson:
        return self._persons[index]

    @property
    def persons(self) -> Tuple[TrackPerson, ...]:
        return tuple(self._persons)

    def nb_persons(self) -> int:
        return len(self._persons)

    def is_empty(self) -> bool:
        return not self._persons

    def largest_last_frame(self) -> int:
        return max((p.last_frame for p in self._persons if len(p)), default=-1)

    def smallest_first_frame(self) -> int:
        return min((p.first_frame for p in self._persons if len(p)), default=-1)

    def largest_first_frame(self) -> int:
        return max((p.first_frame for p in self._persons if len(p)), default=-1)

    def smallest_last_frame(self) -> int:
        return min((p.last_frame for p in self._persons if len(p)), default=-1)

    def visible(self, frame: int) -> int:
        return sum(1 for p in self._persons if frame in p)

    def points_at(self, frame: int) -> List[Tuple[int, TrackPoint]]:
        return [(i, p.at(frame)) for i, p in enumerate(self._persons) if frame in p]

    def total_points(self) -> int:
        return sum(len(p) for p in self._persons)

    # ==================
    # Structural changes
    # ==================
    def clear(self):
        self._persons.clear()

    def add_person(self, person: TrackPerson) -> int:
        self._persons.append(person)
        person.nr = len(self._persons)
        return len(self._persons) - 1

    def add_persons(self, persons: Iterable[TrackPerson]) -> List[int]:
        return [self.add_person(p) for p in persons]

    def remove_person(self, index: int) -> TrackPerson:
        person = self._persons.pop(index)
        self._renumber()
        return person

    def _renumber(self):
        for i, p in enumerate(self._persons):
            p.nr = i + 1

    def _drop_empty(self):
        before = len(self._persons)
        self._persons = [p for p in self._persons if not p.is_empty()]
        if len(self._persons) != before:
            self._renumber()

    def merge_persons(self, index: int, other: int) -> int:
        """Joins person ``other`` into ``index``; returns the new index of the joined person."""
        if index == other:
            return index
        self._persons[index].merge(self._persons[other])
        keep = self._persons[index]
        self.remove_person(other)
        return self._persons.index(keep)

    def overlapping_pairs(self, indices: Optional[Collection[int]] = None) -> List[Tuple[int, int]]:
        """Pairs (i, j) whose frame ranges overlap, with j taken from ``indices`` if given."""
        check = range(len(self._persons)) if indices is None else indices
        pairs = set()
        for j in check:
            for i in range(len(self._persons)):
                if i != j and self._persons[i].overlaps(self._persons[j]):
                    pairs.add((min(i, j), max(i, j)))
        return sorted(pairs)

    # ============
    # Point insert
    # ============
    def _max_dist(self, pos: Vec2F, frame: int) -> float:
        if self.distance_fn is not None:
            d = self.distance_fn(pos, frame)
            if d and d > 0:
                return float(d)
        return self.max_distance

    def _attach_marker_info(self, person: TrackPerson, point: TrackPoint, method=None):
        if point.color is not None and (person.color is None or method == "MULTICOLOR"):
            person.color = point.color
        if point.marker_id >= 0 and person.marker_id < 0:
            person.marker_id = point.marker_id

    def _nearest_at(self, point: TrackPoint, frame: int, selection: Collection[int] = ()) -> int:
        """Index of the person whose reference point at ``frame`` is nearest and within reach, else -1."""
        best, best_dist = -1, float("inf")
        limit = self._max_dist(point.pos, frame)
        for i, person in enumerate(self._persons):
            if selection and i not in selection:
                continue
            ref = person.reference_point(frame)
            if ref is None:
                continue
            d = ref.distance_to(point)
            if d < limit and d < best_dist:
                best, best_dist = i, d
        return best

    def add_point(self, point: TrackPoint, frame: int, selection: Collection[int] = (),
                  method: Optional[str] = None, only_visible: Optional[Collection[int]] = None) -> int:
        """
        Adds ``point`` to the nearest trajectory at ``frame`` or creates a new one.

        Returns the index of the affected person, or -1 if the point was
        suppressed because a new person would not be visible under the active
        ``only_visible`` filter.
        """
        best = self._nearest_at(point, frame, selection)
        if best >= 0:
            person = self._persons[best]
            person.insert(frame, point)
            self._attach_marker_info(person, point, method)
            return best

        new_index = len(self._persons)
        if only_visible is not None and new_index not in only_visible:
            return -1
        person = TrackPerson(nr=new_index + 1)
        person.set_point(frame, point)
        self._attach_marker_info(person, point, method)
        return self.add_person(person)

    def add_points(self, points: Sequence[TrackPoint], frame: int, method: Optional[str] = None) -> List[int]:
        """
        Greedy closest-pair association of recognized points with the
        trajectories at ``frame``. A point left over joins the nearest
        trajectory within reach (priority rule decides which point stays);
        only points with nothing in reach start new trajectories.
        Returns the person index for every input point.
        """
        result = [-1] * len(points)
        if not points:
            return result

        refs, ref_idx = [], []
        for i, person in enumerate(self._persons):
            ref = person.reference_point(frame)
            if ref is not None:
                refs.append(ref.pos)
                ref_idx.append(i)

        pairs = []
        if refs:
            C = cdist(np.array([p.pos for p in points], dtype=float), np.array(refs, dtype=float))
            flat = [(C[j, k], j, k) for j in range(C.shape[0]) for k in range(C.shape[1])]
            used_j, used_k = set(), set()
            for d, j, k in sorted(flat, key=lambda x: (x[0], x[1], x[2])):
                if j in used_j or k in used_k or d >= self._max_dist(points[j].pos, frame):
                    continue
                used_j.add(j)
                used_k.add(k)
                pairs.append((j, ref_idx[k]))

        for j, i in pairs:
            person = self._persons[i]
            person.insert(frame, points[j])
            self._attach_marker_info(person, points[j], method)
            result[j] = i

        # leftovers join the nearest person within reach, including persons
        # created in this call, before a new trajectory is started
        for j, point in enumerate(points):
            if result[j] >= 0:
                continue
            best = self._nearest_at(point, frame)
            if best >= 0:
                self._persons[best].insert(frame, point)
                self._attach_marker_info(self._persons[best], point, method)
                result[j] = best
                continue
            person = TrackPerson(nr=len(self._persons) + 1)
            person.set_point(frame, point)
            self._attach_marker_info(person, point, method)
            result[j] = self.add_person(person)
        return result

    def commit_tracked(self, person: TrackPerson, frame: int, point: TrackPoint) -> bool:
        if person not in self._persons:
            return False
        return person.insert(frame, point)

    # =======
    # Picking
    # =======
    def get_proximal_persons(self, pos, selection: Collection[int] = (),
                             frame_range: Tuple[int, int, int] = (0, 0, 0),
                             max_distance: Optional[float] = None) -> List[Tuple[int, int, float]]:
        """
        Persons with a point within ``max_distance`` of ``pos`` inside the frame
        window ``[current - before, current + after]`` given as
        ``frame_range = (before, after, current)``.

        Returns ``(index, frame, distance)`` with the frame of each person's
        closest point, sorted by distance, then index.
        """
        before, after, current = frame_range
        pos = Vec2F(*pos[:2])
        limit = self._max_dist(pos, current) if max_distance is None else max_distance
        found = []
        for i, person in enumerate(self._persons):
            if selection and i not in selection:
                continue
            best, best_frame = float("inf"), -1
            for f in range(current - before, current + after + 1):
                p = person.get(f)
                if p is not None and p.distance_to(pos) < best:
                    best, best_frame = p.distance_to(pos), f
            if best < limit:
                found.append((i, best_frame, best))
        found.sort(key=lambda x: (x[2], x[0]))
        return found

    def nearest_person(self, pos, frame: int, selection: Collection[int] = (),
                       tolerance: float = config.AMBIGUITY_TOLERANCE) -> int:
        """
        Index of the trajectory nearest to ``pos`` at ``frame`` or -1.
        Raises AmbiguousSelectionError if several are equally near.
        """
        found = self.get_proximal_persons(pos, selection, (0, 0, frame))
        if not found:
            return -1
        ties = [i for i, _, d in found if d - found[0][2] <= tolerance]
        if len(ties) > 1:
            raise AmbiguousSelectionError(ties)
        return found[0][0]

    def move_point(self, index: int, frame: int, pos) -> TrackPoint:
        """
        Moves the point of person ``index`` at ``frame`` to ``pos`` (or sets one)
        as a manual point. The stereo position is dropped as it belonged to the
        old pixel.
        """
        person = self._persons[index]
        old = person.get(frame)
        if old is None:
            point = TrackPoint(Vec2F(*pos[:2]), config.MAX_QUALITY, PointSource.MANUAL)
        else:
            point = replace(old, pos=Vec2F(*pos[:2]), quality=config.MAX_QUALITY,
                            source=PointSource.MANUAL, sp=None)
        person.set_point(frame, point)
        return point

    # ========
    # Deletion
    # ========
    def _delete_from(self, index: int, direction: Direction, frame: int):
        person = self._persons[index]
        if direction == Direction.WHOLE:
            person.remove_range()
        elif direction == Direction.PREVIOUS:
            person.remove_range(None, frame)
        else:
            person.remove_range(frame, None)

    def del_point(self, pos, direction: Direction, frame: int, selection: Collection[int] = ()) -> bool:
        """Deletes (part of) the trajectory nearest to ``pos`` at ``frame``."""
        index = self.nearest_person(pos, frame, selection)
        if index < 0:
            return False
        self._delete_from(index, Direction(direction), frame)
        self._drop_empty()
        return True

    def del_point_all(self, direction: Direction, frame: int, selection: Collection[int] = ()) -> int:
        """Applies the deletion to every (selected) trajectory; returns persons touched."""
        touched = 0
        for i in range(len(self._persons)):
            if selection and i not in selection:
                continue
            self._delete_from(i, Direction(direction), frame)
            touched += 1
        self._drop_empty()
        return touched

    def del_points_roi(self, roi, inside: bool = True) -> int:
        """Removes every point inside (or outside) ``roi``; returns the count removed."""
        removed = 0
        for person in self._persons:
            for f, p in person.items():
                if in_roi(p.pos, roi) == inside:
                    person.remove(f)
                    removed += 1
        self._drop_empty()
        return removed

    def split_person_at(self, pos, frame: int, selection: Collection[int] = ()) -> bool:
        """Splits the nearest trajectory so that ``frame`` starts a new person."""
        index = self.nearest_person(pos, frame, selection)
        if index < 0:
            return False
        person = self._persons[index]
        if frame <= person.first_frame:
            return False
        tail = person.split_at(frame, nr=len(self._persons) + 1)
        self.add_person(tail)
        return True

    def purge(self, frame: int, ratio: float = config.PURGE_RECO_RATIO,
              quality_floor: int = config.PURGE_QUALITY_FLOOR) -> int:
        """
        In trajectories that are mostly tracked (recognized share below
        ``ratio``), removes tracked points up to ``frame`` whose quality is below
        ``quality_floor``. Trajectories left empty are deleted.
        """
        removed = 0
        for person in self._persons:
            if person.is_empty() or person.recognized_ratio() >= ratio:
                continue
            for f, p in person.items():
                if f > frame:
                    break
                if p.source == PointSource.TRACKED and p.quality < quality_floor:
                    person.remove(f)
                    removed += 1
        self._drop_empty()
        if removed and self.verbose:
            print(f"[INFO] Purged {removed} weak tracked points up to frame {frame}.")
        return removed

    # ==========
    # Real world
    # ==========
    def calc_position(self, frame: int, stereo) -> int:
        """Sets ``sp`` for all points at ``frame`` from the stereo context."""
        count = 0
        for person in self._persons:
            p = person.get(frame)
            if p is None:
                continue
            sp = stereo.world_point(p.pos)
            if sp is not None:
                p.sp = Vec3F(*sp)
                count += 1
        return count

    def recalc_height(self, default_height: Optional[float] = None) -> int:
        """Recomputes person heights from stereo positions; returns persons with a height."""
        n = 0
        for person in self._persons:
            person.recalc_height()
            if person.height is None and default_height is not None:
                person.height = default_height
            if person.height is not None:
                n += 1
        return n

    def optimize_color(self):
        for person in self._persons:
            person.optimize_color()

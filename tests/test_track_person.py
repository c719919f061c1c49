import pytest

from pedtrack.track_person import PointSource, TrackPerson, TrackPoint
from pedtrack.vector import Vec3F


def tracked(x, y, q=80):
    return TrackPoint((x, y), q, PointSource.TRACKED)


def recognized(x, y, q=100):
    return TrackPoint((x, y), q, PointSource.RECOGNIZED)


def manual(x, y):
    return TrackPoint((x, y), 100, PointSource.MANUAL)


def test_legacy_manual_quality_is_clamped():
    p = TrackPoint((1, 2), 110, PointSource.TRACKED)
    assert p.source == PointSource.MANUAL
    assert p.quality == 100


def test_recognized_beats_tracked_regardless_of_quality():
    person = TrackPerson(1)
    person.insert(0, tracked(10, 10, q=99))
    assert person.insert(0, recognized(11, 11, q=40))
    assert person.at(0).source == PointSource.RECOGNIZED
    assert not person.insert(0, tracked(12, 12, q=100))
    assert person.at(0).pos == (11.0, 11.0)


def test_higher_quality_wins_within_same_source():
    person = TrackPerson(1)
    person.insert(3, recognized(0, 0, q=60))
    assert not person.insert(3, recognized(1, 1, q=60))
    assert person.insert(3, recognized(2, 2, q=70))
    assert person.at(3).quality == 70


def test_manual_point_always_replaces():
    person = TrackPerson(1)
    person.insert(0, recognized(0, 0))
    assert person.insert(0, manual(5, 5))
    assert person.insert(0, manual(6, 6))
    assert person.at(0).pos == (6.0, 6.0)
    assert not person.insert(0, recognized(7, 7))


def test_insert_keeps_stereo_position_and_fills_colour():
    person = TrackPerson(1)
    person.insert(0, TrackPoint((0, 0), 50, PointSource.TRACKED, sp=Vec3F(1, 2, 170)))
    person.insert(0, recognized(1, 1))
    assert person.at(0).sp == Vec3F(1, 2, 170)

    person.insert(1, recognized(2, 2))
    person.insert(1, TrackPoint((2, 2), 10, PointSource.TRACKED, color=(255, 0, 0)))
    assert person.at(1).source == PointSource.RECOGNIZED
    assert person.at(1).color == (255, 0, 0)


def test_frames_stay_sorted_and_gaps_are_kept():
    person = TrackPerson(1)
    for f in (5, 1, 3):
        person.set_point(f, tracked(f, f))
    assert person.frames() == [1, 3, 5]
    assert person.first_frame == 1
    assert person.last_frame == 5
    assert person.has_gaps()


def test_first_frame_of_empty_person_raises():
    with pytest.raises(ValueError):
        TrackPerson(1).first_frame


def test_neighbour_points_respect_max_gap():
    person = TrackPerson.from_points(1, {0: tracked(0, 0), 10: tracked(10, 10)})
    assert person.point_before(4)[0] == 0
    assert person.point_before(4, max_gap=3) is None
    assert person.point_after(4)[0] == 10
    assert person.point_after(8, max_gap=2)[0] == 10
    assert person.point_before(0) is None
    assert person.reference_point(11).pos == (10.0, 10.0)
    assert person.reference_point(5) is None


def test_remove_range_is_inclusive():
    person = TrackPerson.from_points(1, {f: tracked(f, f) for f in range(10)})
    assert person.remove_range(3, 5) == 3
    assert person.frames() == [0, 1, 2, 6, 7, 8, 9]
    assert person.remove_range(None, 1) == 2
    assert person.remove_range(8, None) == 2
    assert person.frames() == [2, 6, 7]


def test_split_and_merge():
    person = TrackPerson.from_points(1, {f: tracked(f, 0) for f in range(6)}, height=180.0, marker_id=4)
    tail = person.split_at(3, nr=2)
    assert person.frames() == [0, 1, 2]
    assert tail.frames() == [3, 4, 5]
    assert tail.height == 180.0
    assert tail.marker_id == 4

    tail.insert(2, recognized(2.5, 0))
    taken = person.merge(tail)
    assert person.frames() == list(range(6))
    assert person.at(2).source == PointSource.RECOGNIZED
    assert taken == 4


def test_overlap_and_shared_frames():
    a = TrackPerson.from_points(1, {f: tracked(0, 0) for f in range(0, 5)})
    b = TrackPerson.from_points(2, {f: tracked(0, 0) for f in range(4, 8)})
    c = TrackPerson.from_points(3, {f: tracked(0, 0) for f in range(9, 12)})
    assert a.overlaps(b)
    assert not a.overlaps(c)
    assert a.shared_frames(b) == [4]


def test_recalc_height_uses_median_of_plausible_values():
    person = TrackPerson(1)
    for f, z in enumerate([170.0, 180.0, 175.0, 10.0]):
        person.set_point(f, TrackPoint((0, 0), sp=Vec3F(0, 0, z)))
    assert person.recalc_height() == pytest.approx(175.0)


def test_optimize_color_takes_most_frequent():
    person = TrackPerson(1)
    for f, c in enumerate([(1, 2, 3), (9, 9, 9), (1, 2, 3)]):
        person.set_point(f, TrackPoint((0, 0), color=c))
    assert person.optimize_color() == (1, 2, 3)


def test_recognized_ratio():
    person = TrackPerson.from_points(1, {0: recognized(0, 0), 1: tracked(0, 0), 2: tracked(0, 0), 3: manual(0, 0)})
    assert person.recognized_ratio() == pytest.approx(0.5)
